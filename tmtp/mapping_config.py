"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMTP, licensed under the MIT License.
See LICENSE file for details.
"""

"""
Operator mapping decisions for reference entities.

The configuration is JSON keyed by entity type and then by source id, with
camelCase keys. Each entry says whether the source entity is mapped onto an
existing target record or created. The models here are lenient: an unknown
action falls back to the entity's default action, a non-numeric source id is
dropped and a non-object entry becomes a default decision. Resolvers mutate
the decisions in place, and ``to_dict`` serializes them back for the job.
"""

import secrets
import string
from typing import Annotated, Any, ClassVar, Literal

from pydantic import (
    AliasChoices,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from tmtp.values import to_bool, to_int, to_string

ACTIONS = ("map", "create")

USER_ACCESS_LEVELS = ("ADMIN", "USER", "PROJECTADMIN", "NONE")


def _lenient_bool(default: bool):
    def coerce(value: Any) -> bool:
        return default if value is None else to_bool(value)

    return coerce


OptionalInt = Annotated[int | None, BeforeValidator(to_int)]
OptionalStr = Annotated[str | None, BeforeValidator(to_string)]
FalseyBool = Annotated[bool, BeforeValidator(_lenient_bool(False))]
TruthyBool = Annotated[bool, BeforeValidator(_lenient_bool(True))]


def generate_password(length: int = 24) -> str:
    alphabet = string.ascii_letters + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(length))


class Decision(BaseModel):
    """A single create-or-map decision for one source entity."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    DEFAULT_ACTION: ClassVar[str] = "create"

    action: str = "create"
    mapped_to: OptionalInt = None
    name: OptionalStr = None

    @model_validator(mode="before")
    @classmethod
    def coerce_entry(cls, value: Any) -> Any:
        if not isinstance(value, dict):
            return {"action": cls.DEFAULT_ACTION}
        if "action" not in value:
            return {**value, "action": cls.DEFAULT_ACTION}
        return value

    @field_validator("action", mode="before")
    @classmethod
    def validate_action(cls, value: Any) -> str:
        return value if value in ACTIONS else cls.DEFAULT_ACTION

    @property
    def is_map(self) -> bool:
        return self.action == "map"

    def mark_mapped(self, target_id: int, **fields) -> None:
        """Record the target id and flip the decision to ``map``."""
        self.action = "map"
        self.mapped_to = target_id
        for key, value in fields.items():
            setattr(self, key, value)


class WorkflowDecision(Decision):
    DEFAULT_ACTION: ClassVar[str] = "map"

    action: str = "map"
    workflow_type: OptionalStr = Field(
        default=None,
        validation_alias=AliasChoices(
            "workflowType", "workflow_type", "suggestedWorkflowType"
        ),
    )
    scope: OptionalStr = None
    icon: OptionalStr = None
    color: OptionalStr = None


class StatusDecision(Decision):
    system_name: OptionalStr = None
    color_hex: OptionalStr = None
    color_id: OptionalInt = None
    aliases: OptionalStr = None
    is_success: FalseyBool = False
    is_failure: FalseyBool = False
    is_completed: FalseyBool = False
    is_enabled: TruthyBool = True
    scope_ids: list[int] | None = None

    @field_validator("scope_ids", mode="before")
    @classmethod
    def validate_scope_ids(cls, value: Any) -> list[int] | None:
        if value is None:
            return None
        entries = value if isinstance(value, list) else [value]
        ids = [to_int(entry) for entry in entries]
        return [entry for entry in ids if entry is not None] or None


class RoleDecision(Decision):
    is_default: FalseyBool = False


class GroupDecision(Decision):
    note: OptionalStr = None


class TagDecision(Decision):
    pass


class MilestoneTypeDecision(Decision):
    icon: OptionalStr = None
    is_default: FalseyBool = False


class ConfigurationDecision(Decision):
    pass


class IssueTargetDecision(Decision):
    provider: OptionalStr = None
    testmo_type: OptionalInt = Field(
        default=None, validation_alias=AliasChoices("testmoType", "testmo_type", "type")
    )
    base_url: OptionalStr = None


class UserDecision(Decision):
    """
    A user decision. Passwords given here are hashed on creation and then
    cleared, so a persisted configuration never carries them.
    """

    DEFAULT_ACTION: ClassVar[str] = "map"

    action: str = "map"
    email: OptionalStr = None
    password: OptionalStr = None
    access: OptionalStr = None
    role_id: OptionalInt = None
    is_active: TruthyBool = True
    is_api: FalseyBool = False

    @field_validator("access", mode="before")
    @classmethod
    def validate_access(cls, value: Any) -> str | None:
        if not isinstance(value, str):
            return None
        upper = value.strip().upper()
        return upper if upper in USER_ACCESS_LEVELS else None


class TemplateDecision(Decision):
    DEFAULT_ACTION: ClassVar[str] = "map"

    action: str = "map"


class FieldOptionConfig(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    name: str
    is_enabled: TruthyBool = True
    is_default: FalseyBool = False
    order: int = 0


def normalize_option_list(value: Any) -> list[dict[str, Any]] | None:
    """
    Accept options as a list of names, a list of option objects or a comma or
    newline separated string. Options are ordered and exactly one is default.
    """
    if not value:
        return None
    if isinstance(value, str):
        value = [segment for segment in value.replace("\n", ",").split(",")]
    if not isinstance(value, list):
        return None

    options = []
    for index, entry in enumerate(value):
        if isinstance(entry, str):
            name = entry.strip()
            if name:
                options.append(
                    {"name": name, "is_enabled": True, "is_default": False, "order": index}
                )
            continue
        if not isinstance(entry, dict):
            continue
        name = to_string(
            entry.get("name")
            or entry.get("label")
            or entry.get("value")
            or entry.get("displayName")
            or entry.get("display_name")
        )
        if not name or not name.strip():
            continue
        order = to_int(entry.get("order", entry.get("position", entry.get("index"))))
        options.append(
            {
                "name": name.strip(),
                "is_enabled": to_bool(entry.get("isEnabled", entry.get("is_enabled", True))),
                "is_default": to_bool(
                    entry.get("isDefault", entry.get("is_default", entry.get("default", False)))
                ),
                "order": index if order is None else order,
            }
        )

    if not options:
        return None

    options.sort(key=lambda option: option["order"])
    default_seen = False
    for option in options:
        if option["is_default"] and not default_seen:
            default_seen = True
        else:
            option["is_default"] = False
    if not default_seen:
        options[0]["is_default"] = True
    for index, option in enumerate(options):
        option["order"] = index
    return options


class TemplateFieldDecision(Decision):
    """A case or result field to map onto an existing field or create."""

    target_type: Literal["case", "result"] = Field(
        default="case",
        validation_alias=AliasChoices(
            "targetType", "target_type", "fieldTarget", "field_target", "scope"
        ),
    )
    display_name: OptionalStr = Field(
        default=None, validation_alias=AliasChoices("displayName", "display_name", "label")
    )
    system_name: OptionalStr = None
    type_name: OptionalStr = Field(
        default=None,
        validation_alias=AliasChoices("typeName", "type_name", "fieldType", "field_type"),
    )
    hint: OptionalStr = None
    is_required: FalseyBool = False
    is_restricted: FalseyBool = False
    dropdown_options: list[FieldOptionConfig] | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "dropdownOptions", "dropdown_options", "options", "choices"
        ),
    )
    template_name: OptionalStr = None
    order: OptionalInt = None

    @field_validator("target_type", mode="before")
    @classmethod
    def validate_target_type(cls, value: Any) -> str:
        if isinstance(value, str):
            normalized = value.strip().lower()
            if normalized in ("result", "results"):
                return "result"
        return "case"

    @field_validator("dropdown_options", mode="before")
    @classmethod
    def validate_options(cls, value: Any) -> list[dict[str, Any]] | None:
        return normalize_option_list(value)

    @model_validator(mode="after")
    def default_system_name(self):
        # Older configurations key the system name as plain ``name``
        if self.system_name is None and self.name:
            self.system_name = self.name
        return self


ENTITY_DECISIONS: dict[str, type[Decision]] = {
    "workflows": WorkflowDecision,
    "statuses": StatusDecision,
    "roles": RoleDecision,
    "milestone_types": MilestoneTypeDecision,
    "groups": GroupDecision,
    "tags": TagDecision,
    "issue_targets": IssueTargetDecision,
    "users": UserDecision,
    "configurations": ConfigurationDecision,
    "templates": TemplateDecision,
    "template_fields": TemplateFieldDecision,
}


def _numeric_keys(entries: Any) -> dict[int, Any]:
    if not isinstance(entries, dict):
        return {}
    result = {}
    for key, entry in entries.items():
        source_id = to_int(key)
        if source_id is not None:
            result[source_id] = entry
    return result


class MappingConfiguration(BaseModel):
    """Decisions for every reference entity type, keyed by source id."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    workflows: dict[int, WorkflowDecision] = Field(default_factory=dict)
    statuses: dict[int, StatusDecision] = Field(default_factory=dict)
    roles: dict[int, RoleDecision] = Field(default_factory=dict)
    milestone_types: dict[int, MilestoneTypeDecision] = Field(default_factory=dict)
    groups: dict[int, GroupDecision] = Field(default_factory=dict)
    tags: dict[int, TagDecision] = Field(default_factory=dict)
    issue_targets: dict[int, IssueTargetDecision] = Field(default_factory=dict)
    users: dict[int, UserDecision] = Field(default_factory=dict)
    configurations: dict[int, ConfigurationDecision] = Field(default_factory=dict)
    templates: dict[int, TemplateDecision] = Field(default_factory=dict)
    template_fields: dict[int, TemplateFieldDecision] = Field(default_factory=dict)

    @field_validator(*ENTITY_DECISIONS, mode="before")
    @classmethod
    def drop_non_numeric_ids(cls, value: Any) -> dict[int, Any]:
        return _numeric_keys(value)

    @classmethod
    def from_dict(cls, value: Any) -> "MappingConfiguration":
        """Build a configuration from stored JSON, tolerating anything."""
        if not isinstance(value, dict):
            return cls()
        return cls.model_validate(value)

    def decisions(self, entity: str) -> dict[int, Decision]:
        return getattr(self, entity)

    def count(self, entity: str) -> int:
        return len(self.decisions(entity))

    def to_dict(self) -> dict[str, Any]:
        """Serialize with camelCase keys and string source ids for JSON storage."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
