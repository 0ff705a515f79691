"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMTP, licensed under the MIT License.
See LICENSE file for details.
"""

"""
Web links of projects, milestones and runs.

The target has no link table; each link becomes a paragraph appended to the
owner's ``docs`` document. A link whose URL the document already carries
counts as mapped, so re-running an import does not repeat it.
"""

from typing import Any

from sqlalchemy.orm import Session

from tmtp.core import target_models as tm
from tmtp.records import LinkRecord
from tmtp.rich_text import append_blocks, is_document, link_paragraph
from tmtp.transformers.base import CREATED, MAPPED, Transformer


def has_link(document: Any, url: str) -> bool:
    """Whether any text node of the document links to ``url``."""
    if not is_document(document):
        return False
    pending = list(document.get("content") or [])
    while pending:
        node = pending.pop()
        if not isinstance(node, dict):
            continue
        for mark in node.get("marks") or []:
            if mark.get("type") == "link" and (mark.get("attrs") or {}).get("href") == url:
                return True
        pending.extend(node.get("content") or [])
    return False


class LinkTransformer(Transformer):
    record_type = LinkRecord
    owner_field = ""
    owner_entity = ""
    model: Any = None

    def process(self, session: Session, record: LinkRecord) -> str:
        owner_source = getattr(record, self.owner_field)
        owner_id = self.context.maps.resolve(self.owner_entity, owner_source)
        if owner_id is None:
            return self.skip(
                f"Skipping link due to missing {self.owner_entity} mapping",
                **{self.owner_field: owner_source, "url": record.url},
            )
        url = (record.url or "").strip()
        if not url:
            return self.skip("Skipping link without a URL", **{self.owner_field: owner_source})

        owner = session.get(self.model, owner_id)
        if has_link(owner.docs, url):
            return MAPPED
        name = (record.name or "").strip() or url
        owner.docs = append_blocks(owner.docs, [link_paragraph(name, url, record.note)])
        return CREATED


class ProjectLinkTransformer(LinkTransformer):
    entity = "project_links"
    dataset = "project_links"
    owner_field = "project_id"
    owner_entity = "projects"
    model = tm.Project


class MilestoneLinkTransformer(LinkTransformer):
    entity = "milestone_links"
    dataset = "milestone_links"
    owner_field = "milestone_id"
    owner_entity = "milestones"
    model = tm.Milestone


class RunLinkTransformer(LinkTransformer):
    entity = "run_links"
    dataset = "run_links"
    owner_field = "run_id"
    owner_entity = "test_runs"
    model = tm.TestRun


class AutomationRunLinkTransformer(LinkTransformer):
    entity = "automation_run_links"
    dataset = "automation_run_links"
    owner_field = "run_id"
    owner_entity = "automation_runs"
    model = tm.TestRun
