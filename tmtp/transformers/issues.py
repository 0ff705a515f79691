"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMTP, licensed under the MIT License.
See LICENSE file for details.
"""

"""
Issues and the five kinds of records they are linked to.
"""

from sqlalchemy import select
from sqlalchemy.orm import Session

from tmtp.core import target_models as tm
from tmtp.core.logging import get_logger
from tmtp.records import IssueLinkRecord, IssueRecord
from tmtp.transformers.base import CREATED, MAPPED, AssociationTransformer, Transformer

logger = get_logger(__name__)

ISSUE_ID_PLACEHOLDER = "{issueId}"


def build_issue_url(integration: tm.Integration, key: str) -> str | None:
    """
    External URL of an issue for its integration's provider.

    Args:
    ----
        integration: Issue tracker the issue belongs to
        key: Issue key as displayed by the tracker, e.g. ``PROJ-12``

    Returns:
    -------
        The URL, or None when the integration has no base URL

    """
    template = integration.url_template or ""
    if integration.provider == tm.IntegrationProvider.SIMPLE_URL and ISSUE_ID_PLACEHOLDER in template:
        return template.replace(ISSUE_ID_PLACEHOLDER, key)
    if not integration.base_url:
        return None
    base = integration.base_url.rstrip("/")
    if integration.provider == tm.IntegrationProvider.JIRA:
        return f"{base}/browse/{key}"
    if integration.provider == tm.IntegrationProvider.GITHUB:
        return f"{base}/issues/{key}"
    if integration.provider == tm.IntegrationProvider.AZURE_DEVOPS:
        return f"{base}/_workitems/edit/{key}"
    if ISSUE_ID_PLACEHOLDER in base:
        return base.replace(ISSUE_ID_PLACEHOLDER, key)
    return f"{base}/{key}"


class IssueTransformer(Transformer):
    """Issues by ``(external id, integration)``."""

    entity = "issues"
    dataset = "issues"
    record_type = IssueRecord

    def process(self, session: Session, record: IssueRecord) -> str:
        context = self.context
        key = (record.display_id or "").strip()
        if record.id is None or record.target_id is None or not key:
            return self.skip(
                "Skipping issue without an id, issue target or display id",
                issue_id=record.id,
                target_id=record.target_id,
            )
        integration_id = context.maps.resolve("issue_targets", record.target_id)
        if integration_id is None:
            return self.skip(
                "Skipping issue due to missing issue target mapping",
                issue_id=record.id,
                target_id=record.target_id,
            )

        existing = session.scalars(
            select(tm.Issue.id).where(tm.Issue.external_id == key, tm.Issue.integration_id == integration_id)
        ).first()
        if existing is not None:
            context.maps["issues"].set(record.id, existing)
            return MAPPED

        issue = tm.Issue(
            integration_id=integration_id,
            project_id=context.maps.resolve("projects", record.project_id),
            name=key,
            title=key,
            external_id=key,
            external_key=key,
            external_url=build_issue_url(session.get(tm.Integration, integration_id), key),
        )
        session.add(issue)
        session.flush()
        context.maps["issues"].set(record.id, issue.id)
        return CREATED


class IssueLinkTransformer(AssociationTransformer):
    record_type = IssueLinkRecord
    target_field = "issue_id"
    target_entity = "issues"
    target_column = "issue_id"


class CaseIssueTransformer(IssueLinkTransformer):
    entity = "repository_case_issues"
    dataset = "repository_case_issues"
    owner_field = "case_id"
    owner_entity = "repository_cases"
    table = tm.repository_case_issues
    owner_column = "case_id"


class RunIssueTransformer(IssueLinkTransformer):
    entity = "run_issues"
    dataset = "run_issues"
    owner_field = "run_id"
    owner_entity = "test_runs"
    table = tm.test_run_issues
    owner_column = "test_run_id"


class RunResultIssueTransformer(IssueLinkTransformer):
    entity = "run_result_issues"
    dataset = "run_result_issues"
    owner_field = "result_id"
    owner_entity = "test_run_results"
    table = tm.test_run_result_issues
    owner_column = "result_id"


class SessionIssueTransformer(IssueLinkTransformer):
    entity = "session_issues"
    dataset = "session_issues"
    owner_field = "session_id"
    owner_entity = "sessions"
    table = tm.session_issues
    owner_column = "session_id"


class SessionResultIssueTransformer(IssueLinkTransformer):
    entity = "session_result_issues"
    dataset = "session_result_issues"
    owner_field = "result_id"
    owner_entity = "session_results"
    table = tm.session_result_issues
    owner_column = "result_id"
