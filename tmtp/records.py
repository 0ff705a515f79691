"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMTP, licensed under the MIT License.
See LICENSE file for details.
"""

"""
Typed records for staged export rows.

Staged rows are raw JSON. Transformers read them through these models, which
coerce leniently (ids given as strings, booleans as 0/1, timestamps in any
supported format) and never reject a row for a malformed value: the value
becomes ``None`` and the transformer decides whether the row can be imported.
Keys a model does not declare, such as ``custom_*`` fields, are kept.
"""

from datetime import datetime
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict

from tmtp.values import to_bool, to_datetime, to_int, to_number, to_string

CUSTOM_FIELD_PREFIX = "custom_"


def _optional_bool(value: Any) -> bool | None:
    return None if value is None else to_bool(value)


Int = Annotated[int | None, BeforeValidator(to_int)]
Number = Annotated[float | None, BeforeValidator(to_number)]
Str = Annotated[str | None, BeforeValidator(to_string)]
Bool = Annotated[bool | None, BeforeValidator(_optional_bool)]
Timestamp = Annotated[datetime | None, BeforeValidator(to_datetime)]


class SourceRecord(BaseModel):
    """Base class for all staged row records."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    @property
    def extras(self) -> dict[str, Any]:
        return dict(self.model_extra or {})

    def custom_fields(self) -> dict[str, Any]:
        """Custom field values keyed by system name, without the ``custom_`` prefix."""
        return {
            key[len(CUSTOM_FIELD_PREFIX):]: value
            for key, value in self.extras.items()
            if key.startswith(CUSTOM_FIELD_PREFIX)
        }


class NamedRecord(SourceRecord):
    id: Int = None
    name: Str = None


class ProjectRecord(NamedRecord):
    note: Any = None
    docs: Any = None
    is_completed: Bool = None
    completed_at: Timestamp = None
    created_at: Timestamp = None
    created_by: Int = None


class MilestoneRecord(NamedRecord):
    project_id: Int = None
    type_id: Int = None
    parent_id: Int = None
    root_id: Int = None
    note: Any = None
    docs: Any = None
    is_started: Bool = None
    is_completed: Bool = None
    started_at: Timestamp = None
    completed_at: Timestamp = None
    created_at: Timestamp = None
    created_by: Int = None


class SessionRecord(NamedRecord):
    project_id: Int = None
    template_id: Int = None
    state_id: Int = None
    milestone_id: Int = None
    config_id: Int = None
    assignee_id: Int = None
    note: Any = None
    custom_mission: Any = None
    estimate: Number = None
    forecast: Number = None
    elapsed: Number = None
    is_closed: Bool = None
    closed_at: Timestamp = None
    created_at: Timestamp = None
    created_by: Int = None


class SessionResultRecord(SourceRecord):
    id: Int = None
    session_id: Int = None
    status_id: Int = None
    comment: Any = None
    elapsed: Number = None
    created_at: Timestamp = None
    created_by: Int = None


class SessionValueRecord(SourceRecord):
    session_id: Int = None
    field_id: Int = None
    value_id: Int = None


class RepositoryRecord(SourceRecord):
    id: Int = None
    project_id: Int = None
    is_master: Int = None
    is_snapshot: Any = None

    @property
    def snapshot(self) -> bool:
        return is_snapshot_value(self.is_snapshot)


def is_snapshot_value(value: Any) -> bool:
    """A repository is a snapshot when flagged 1 or with any value containing "true"."""
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value == 1
    return "true" in str(value).lower() or str(value).strip() == "1"


class FolderRecord(NamedRecord):
    project_id: Int = None
    repo_id: Int = None
    parent_id: Int = None
    docs: Any = None
    display_order: Int = None
    created_at: Timestamp = None
    created_by: Int = None


class CaseRecord(NamedRecord):
    project_id: Int = None
    repo_id: Int = None
    folder_id: Int = None
    template_id: Int = None
    state_id: Int = None
    key: Str = None
    estimate: Number = None
    display_order: Int = None
    automated: Bool = None
    created_at: Timestamp = None
    created_by: Int = None


class CaseValueRecord(SourceRecord):
    case_id: Int = None
    field_id: Int = None
    value_id: Int = None
    project_id: Int = None
    repo_id: Int = None


class StepTextRecord(SourceRecord):
    display_order: Int = None
    text1: Str = None
    text2: Str = None
    text3: Str = None
    text4: Str = None


class CaseStepRecord(StepTextRecord):
    case_id: Int = None
    project_id: Int = None
    repo_id: Int = None


class RunRecord(NamedRecord):
    project_id: Int = None
    state_id: Int = None
    config_id: Int = None
    milestone_id: Int = None
    note: Any = None
    docs: Any = None
    forecast: Number = None
    elapsed: Number = None
    is_closed: Bool = None
    closed_at: Timestamp = None
    created_at: Timestamp = None
    created_by: Int = None


class RunTestRecord(NamedRecord):
    run_id: Int = None
    case_id: Int = None
    is_selected: Bool = None
    status_id: Int = None
    assignee_id: Int = None
    elapsed: Number = None


class RunResultRecord(SourceRecord):
    id: Int = None
    run_id: Int = None
    test_id: Int = None
    status_id: Int = None
    comment: Any = None
    elapsed: Number = None
    is_deleted: Bool = None
    created_at: Timestamp = None
    created_by: Int = None


class RunResultStepRecord(StepTextRecord):
    id: Int = None
    result_id: Int = None
    test_id: Int = None
    status_id: Int = None
    comment: Any = None


class LinkRecord(NamedRecord):
    """A web link attached to a project, milestone or run."""

    project_id: Int = None
    milestone_id: Int = None
    run_id: Int = None
    url: Str = None
    note: Str = None


class AutomationCaseRecord(NamedRecord):
    project_id: Int = None
    folder: Str = None
    created_at: Timestamp = None


class AutomationRunRecord(NamedRecord):
    project_id: Int = None
    config_id: Int = None
    milestone_id: Int = None
    elapsed: Number = None
    total_count: Int = None
    is_completed: Bool = None
    created_at: Timestamp = None
    completed_at: Timestamp = None
    created_by: Int = None


class AutomationRunTestRecord(NamedRecord):
    run_id: Int = None
    project_id: Int = None
    case_id: Int = None
    status_id: Int = None
    status: Str = None
    elapsed: Number = None
    created_at: Timestamp = None
    file: Str = None
    line: Int = None


class TagAssignmentRecord(SourceRecord):
    """A tag link row; exactly one owner column is set per dataset."""

    tag_id: Int = None
    case_id: Int = None
    run_id: Int = None
    session_id: Int = None


class IssueRecord(SourceRecord):
    id: Int = None
    target_id: Int = None
    project_id: Int = None
    display_id: Str = None


class IssueLinkRecord(SourceRecord):
    issue_id: Int = None
    case_id: Int = None
    run_id: Int = None
    result_id: Int = None
    session_id: Int = None


class UserGroupRecord(SourceRecord):
    user_id: Int = None
    group_id: Int = None


class TemplateFieldLinkRecord(SourceRecord):
    template_id: Int = None
    field_id: Int = None


class FieldRecord(NamedRecord):
    system_name: Str = None
    type: Any = None


class FieldValueRecord(NamedRecord):
    field_id: Int = None


def parse_record(record_type: type[SourceRecord], payload: dict[str, Any]) -> SourceRecord:
    return record_type.model_validate(payload)
