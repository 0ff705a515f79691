"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMTP, licensed under the MIT License.
See LICENSE file for details.
"""

"""
Resolution of operator mapping decisions for reference entities.

Every reference entity type follows the same pattern, implemented once in
``ReferenceResolver``:

* a ``map`` decision must name an existing target record;
* a ``create`` decision is validated, folded into an existing record when its
  natural key (name, email or system name) is already taken, and otherwise
  created. Either way the decision is flipped to ``map`` with the target id,
  so a rerun maps instead of creating again.

Subclasses supply the entity-specific hooks. Invalid decisions raise
``ConfigurationError`` and fail the whole job.
"""

import re
from collections.abc import Iterable
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.orm import Session
from werkzeug.security import generate_password_hash

from tmtp.core import target_models as tm
from tmtp.core.db_manager import DEFAULT_STATUS_COLOR
from tmtp.core.logging import get_logger
from tmtp.errors import ConfigurationError
from tmtp.identifier_mapping import IdentifierMaps
from tmtp.mapping_config import (
    Decision,
    IssueTargetDecision,
    StatusDecision,
    TemplateFieldDecision,
    UserDecision,
    WorkflowDecision,
    generate_password,
)
from tmtp.progress import EntitySummary
from tmtp.records import NamedRecord, TemplateFieldLinkRecord, UserGroupRecord
from tmtp.values import (
    FieldMetadata,
    generate_system_name,
    is_valid_system_name,
    normalize_color_hex,
)

logger = get_logger(__name__)

# Canonical target field types, keyed by their squashed lower-case spelling
FIELD_TYPES = {
    re.sub(r"[\s_-]+", "", name.lower()): name
    for name in (
        "Checkbox",
        "Date",
        "Dropdown",
        "Integer",
        "Link",
        "Multi-Select",
        "Number",
        "Steps",
        "Text Long",
        "Text String",
    )
}

# Testmo issue target types
ISSUE_TARGET_PROVIDERS = {
    1: tm.IntegrationProvider.JIRA,
    2: tm.IntegrationProvider.GITHUB,
    3: tm.IntegrationProvider.AZURE_DEVOPS,
    4: tm.IntegrationProvider.JIRA,
}


def canonical_field_type(value: str | None) -> str | None:
    if not value:
        return None
    return FIELD_TYPES.get(re.sub(r"[\s_-]+", "", value.lower()))


def provider_for(decision: IssueTargetDecision) -> tm.IntegrationProvider:
    """Provider named by the decision, else derived from the Testmo target type."""
    if decision.provider:
        try:
            return tm.IntegrationProvider(decision.provider.strip().upper())
        except ValueError:
            logger.warning(
                "Unknown issue target provider, deriving from target type",
                context={"provider": decision.provider, "testmo_type": decision.testmo_type},
            )
    return ISSUE_TARGET_PROVIDERS.get(decision.testmo_type, tm.IntegrationProvider.SIMPLE_URL)


def _clean(value: str | None) -> str:
    return (value or "").strip()


class ReferenceResolver:
    """
    Resolves the decisions of one reference entity type.

    Hooks, all optional except ``create``:

    * ``find_existing(target_id)``: the record a ``map`` decision points at
    * ``validate(source_id, decision)``: raise for an unusable ``create``
    * ``find_by_natural_key(decision)``: an existing record to fold into
    * ``create(source_id, decision)``: build and add the new record
    * ``copy_back(decision, record)``: canonical fields to write back
    """

    entity: str = ""
    label: str = ""
    model: Any = None

    def __init__(self, session: Session, maps: IdentifierMaps | None = None):
        self.session = session
        self.maps = maps

    def find_existing(self, target_id: int) -> Any:
        return self.session.get(self.model, target_id)

    def validate(self, source_id: int, decision: Decision) -> None:
        if not _clean(decision.name):
            raise ConfigurationError(
                f"{self.label} requires a name before it can be created",
                self.entity,
                source_id,
            )

    def find_by_natural_key(self, decision: Decision) -> Any:
        return self.session.scalars(
            select(self.model).where(self.model.name == _clean(decision.name))
        ).first()

    def create(self, source_id: int, decision: Decision) -> Any:
        raise NotImplementedError

    def copy_back(self, decision: Decision, record: Any) -> dict[str, Any]:
        return {"name": record.name} if hasattr(record, "name") else {}

    def prepare(self) -> None:
        """Checks that apply to the entity type as a whole."""

    def resolve(self, decisions: dict[int, Decision]) -> EntitySummary:
        """
        Apply every decision of this entity type.

        Args:
        ----
            decisions: Decisions keyed by source id; mutated in place

        Returns:
        -------
            Counts of mapped and created records

        """
        summary = EntitySummary(self.entity)
        if decisions:
            self.prepare()

        for source_id, decision in decisions.items():
            summary.total += 1

            if decision.is_map:
                if decision.mapped_to is None:
                    raise ConfigurationError(
                        f"{self.label} is configured to map but no target was provided",
                        self.entity,
                        source_id,
                    )
                record = self.find_existing(decision.mapped_to)
                if record is None:
                    raise ConfigurationError(
                        f"{self.label} {decision.mapped_to} selected for mapping was not found",
                        self.entity,
                        source_id,
                    )
                self.on_mapped(decision, record)
                summary.mapped += 1
            else:
                self.validate(source_id, decision)
                record = self.find_by_natural_key(decision)
                if record is not None:
                    decision.mark_mapped(record.id, **self.copy_back(decision, record))
                    summary.mapped += 1
                else:
                    record = self.create(source_id, decision)
                    self.session.add(record)
                    self.session.flush()
                    self.after_create(decision, record)
                    decision.mark_mapped(record.id, **self.copy_back(decision, record))
                    summary.created += 1

            if self.maps is not None:
                self.maps[self.entity].set(source_id, decision.mapped_to)

        logger.info(summary.status(), context={"entity": self.entity})
        return summary

    def on_mapped(self, decision: Decision, record: Any) -> None:
        decision.mapped_to = record.id

    def after_create(self, decision: Decision, record: Any) -> None:
        """Dependent rows of a freshly created record."""


class WorkflowResolver(ReferenceResolver):
    entity = "workflows"
    label = "Workflow"
    model = tm.Workflow

    def validate(self, source_id: int, decision: WorkflowDecision) -> None:
        super().validate(source_id, decision)
        if not decision.icon or not decision.color:
            raise ConfigurationError(
                f'Workflow "{_clean(decision.name)}" must include both an icon and a color '
                "before creation",
                self.entity,
                source_id,
            )

    def create(self, source_id: int, decision: WorkflowDecision) -> tm.Workflow:
        try:
            workflow_type = tm.WorkflowType(decision.workflow_type)
        except ValueError:
            workflow_type = tm.WorkflowType.NOT_STARTED
        try:
            scope = tm.WorkflowScope(decision.scope)
        except ValueError:
            scope = tm.WorkflowScope.CASES
        return tm.Workflow(
            name=_clean(decision.name),
            icon=decision.icon,
            color=decision.color,
            workflow_type=workflow_type,
            scope=scope,
            is_enabled=True,
        )

    def copy_back(self, decision: WorkflowDecision, record: tm.Workflow) -> dict[str, Any]:
        return {
            "name": record.name,
            "workflow_type": record.workflow_type.value,
            "scope": record.scope.value,
        }


class StatusResolver(ReferenceResolver):
    entity = "statuses"
    label = "Status"
    model = tm.Status

    def __init__(self, session: Session, maps: IdentifierMaps | None = None):
        super().__init__(session, maps)
        self.scope_ids: list[int] = []
        self._color_ids: dict[str, int] = {}

    def prepare(self) -> None:
        self.scope_ids = list(self.session.scalars(select(tm.StatusScope.id)))
        if not self.scope_ids:
            raise ConfigurationError(
                "No status scopes are configured. Unable to import statuses.", self.entity
            )

    def validate(self, source_id: int, decision: StatusDecision) -> None:
        super().validate(source_id, decision)
        system_name = _clean(decision.system_name)
        if not is_valid_system_name(system_name):
            system_name = generate_system_name(_clean(decision.name))
        decision.system_name = system_name

    def find_by_natural_key(self, decision: StatusDecision) -> tm.Status | None:
        by_name = self.session.scalars(
            select(tm.Status).where(tm.Status.name == _clean(decision.name))
        ).first()
        if by_name is not None:
            return by_name
        return self.session.scalars(
            select(tm.Status).where(tm.Status.system_name == decision.system_name)
        ).first()

    def resolve_color_id(self, color_id: int | None, color_hex: str | None) -> int:
        if color_id is not None:
            if self.session.get(tm.Color, color_id) is None:
                raise ConfigurationError(
                    f"Color {color_id} configured for a status does not exist", self.entity
                )
            return color_id

        hex_value = normalize_color_hex(color_hex) or DEFAULT_STATUS_COLOR
        if hex_value not in self._color_ids:
            color = self.session.scalars(
                select(tm.Color).where(tm.Color.hex_value == hex_value)
            ).first()
            if color is None:
                if hex_value != DEFAULT_STATUS_COLOR:
                    return self.resolve_color_id(None, DEFAULT_STATUS_COLOR)
                raise ConfigurationError(
                    "Unable to resolve a color to apply to an imported status", self.entity
                )
            self._color_ids[hex_value] = color.id
        return self._color_ids[hex_value]

    def create(self, source_id: int, decision: StatusDecision) -> tm.Status:
        color_id = self.resolve_color_id(decision.color_id, decision.color_hex)
        requested = dict.fromkeys(decision.scope_ids or [])
        scope_ids = [scope_id for scope_id in requested if scope_id in self.scope_ids]
        scope_ids = scope_ids or self.scope_ids
        status = tm.Status(
            name=_clean(decision.name),
            system_name=decision.system_name,
            alias=_clean(decision.aliases) or None,
            color_id=color_id,
            is_enabled=decision.is_enabled,
            is_success=decision.is_success,
            is_failure=decision.is_failure,
            is_completed=decision.is_completed,
        )
        status.scopes = [self.session.get(tm.StatusScope, scope_id) for scope_id in scope_ids]
        decision.color_id = color_id
        decision.scope_ids = scope_ids
        return status

    def copy_back(self, decision: StatusDecision, record: tm.Status) -> dict[str, Any]:
        return {"name": record.name, "system_name": record.system_name}


class _DefaultFlagMixin:
    """Creating a record flagged default clears the flag everywhere else."""

    def clear_default(self) -> None:
        self.session.execute(
            update(self.model).where(self.model.is_default.is_(True)).values(is_default=False)
        )


class RoleResolver(_DefaultFlagMixin, ReferenceResolver):
    entity = "roles"
    label = "Role"
    model = tm.Role

    def create(self, source_id: int, decision) -> tm.Role:
        if decision.is_default:
            self.clear_default()
        return tm.Role(name=_clean(decision.name), is_default=decision.is_default)


class MilestoneTypeResolver(_DefaultFlagMixin, ReferenceResolver):
    entity = "milestone_types"
    label = "Milestone type"
    model = tm.MilestoneType

    def create(self, source_id: int, decision) -> tm.MilestoneType:
        if decision.is_default:
            self.clear_default()
        return tm.MilestoneType(
            name=_clean(decision.name), icon=decision.icon, is_default=decision.is_default
        )


class GroupResolver(ReferenceResolver):
    entity = "groups"
    label = "Group"
    model = tm.Group

    def create(self, source_id: int, decision) -> tm.Group:
        return tm.Group(name=_clean(decision.name), note=_clean(decision.note) or None)


class TagResolver(ReferenceResolver):
    entity = "tags"
    label = "Tag"
    model = tm.Tag

    def create(self, source_id: int, decision) -> tm.Tag:
        return tm.Tag(name=_clean(decision.name))


class ConfigurationResolver(ReferenceResolver):
    entity = "configurations"
    label = "Configuration"
    model = tm.Configuration

    def create(self, source_id: int, decision) -> tm.Configuration:
        return tm.Configuration(name=_clean(decision.name))


class UserResolver(ReferenceResolver):
    """Users are matched by lower-cased email; passwords are never written back."""

    entity = "users"
    label = "User"
    model = tm.User

    def validate(self, source_id: int, decision: UserDecision) -> None:
        email = _clean(decision.email).lower()
        if not email:
            raise ConfigurationError(
                "User requires an email address before creation", self.entity, source_id
            )
        decision.email = email

    def find_by_natural_key(self, decision: UserDecision) -> tm.User | None:
        return self.session.scalars(select(tm.User).where(tm.User.email == decision.email)).first()

    def resolve_role_id(self, role_id: int | None) -> int:
        if role_id is not None:
            if self.session.get(tm.Role, role_id) is None:
                raise ConfigurationError(
                    f"Role {role_id} selected for a user does not exist", self.entity
                )
            return role_id
        default_role = self.session.scalars(
            select(tm.Role).where(tm.Role.is_default.is_(True))
        ).first()
        if default_role is None:
            raise ConfigurationError(
                "No default role is configured. Unable to create users.", self.entity
            )
        return default_role.id

    def create(self, source_id: int, decision: UserDecision) -> tm.User:
        password = decision.password or generate_password()
        return tm.User(
            email=decision.email,
            name=_clean(decision.name) or decision.email,
            password_hash=generate_password_hash(password),
            role_id=self.resolve_role_id(decision.role_id),
            access=decision.access or "USER",
            is_active=decision.is_active,
            is_api=decision.is_api,
        )

    def copy_back(self, decision: UserDecision, record: tm.User) -> dict[str, Any]:
        return {
            "name": record.name,
            "email": record.email,
            "access": record.access,
            "role_id": record.role_id,
            "password": None,
        }


class IssueTargetResolver(ReferenceResolver):
    entity = "issue_targets"
    label = "Issue target"
    model = tm.Integration

    def create(self, source_id: int, decision: IssueTargetDecision) -> tm.Integration:
        provider = provider_for(decision)
        decision.provider = provider.value
        return tm.Integration(
            name=_clean(decision.name),
            provider=provider,
            base_url=_clean(decision.base_url) or None,
        )


class TemplateResolver(ReferenceResolver):
    """
    Templates by name. Templates named only by template field decisions are
    created too; ``template_map`` collects every template name seen.
    """

    entity = "templates"
    label = "Template"
    model = tm.Template

    def __init__(self, session: Session, maps: IdentifierMaps | None = None):
        super().__init__(session, maps)
        self.template_map: dict[str, int] = {}

    def on_mapped(self, decision: Decision, record: tm.Template) -> None:
        super().on_mapped(decision, record)
        decision.name = decision.name or record.name
        self.template_map[record.name] = record.id

    def create(self, source_id: int, decision: Decision) -> tm.Template:
        return tm.Template(name=_clean(decision.name), is_enabled=True, is_default=False)

    def copy_back(self, decision: Decision, record: tm.Template) -> dict[str, Any]:
        self.template_map[record.name] = record.id
        return {"name": record.name}

    def template_id_for_name(self, name: str | None, summary: EntitySummary | None = None) -> int | None:
        """Look up a template by name, creating it when missing."""
        name = _clean(name)
        if not name:
            return None
        if name in self.template_map:
            return self.template_map[name]
        existing = self.session.scalars(select(tm.Template).where(tm.Template.name == name)).first()
        if existing is None:
            existing = tm.Template(name=name, is_enabled=True, is_default=False)
            self.session.add(existing)
            self.session.flush()
            if summary is not None:
                summary.created += 1
        elif summary is not None:
            summary.mapped += 1
        self.template_map[name] = existing.id
        return existing.id

    def resolve_with_fields(
        self, decisions: dict[int, Decision], field_decisions: dict[int, TemplateFieldDecision]
    ) -> EntitySummary:
        summary = self.resolve(decisions)
        for decision in field_decisions.values():
            name = _clean(decision.template_name)
            if not name or name in self.template_map:
                continue
            summary.total += 1
            self.template_id_for_name(name, summary)
        return summary


class TemplateFieldResolver(ReferenceResolver):
    """
    Case and result fields, matched by system name within their kind.

    New dropdown and multi-select fields get their options. Fields are
    assigned to templates named by their decision and to the templates the
    ``template_fields`` dataset links them with.
    """

    entity = "template_fields"
    label = "Template field"

    def __init__(
        self,
        session: Session,
        templates: TemplateResolver,
        template_decisions: dict[int, Decision],
        template_rows: Iterable[NamedRecord] = (),
        field_links: Iterable[TemplateFieldLinkRecord] = (),
        maps: IdentifierMaps | None = None,
    ):
        super().__init__(session, maps)
        self.templates = templates
        self.template_ids = {
            source_id: decision.mapped_to
            for source_id, decision in template_decisions.items()
            if decision.mapped_to is not None
        }
        self.template_names = {row.id: row.name for row in template_rows if row.id and row.name}
        self.field_links = list(field_links)
        self.assignments: set[tuple[str, int, int]] = set()
        self.summary: EntitySummary | None = None

    @staticmethod
    def model_for(decision: TemplateFieldDecision) -> type:
        return tm.ResultField if decision.target_type == "result" else tm.CaseField

    def validate(self, source_id: int, decision: TemplateFieldDecision) -> None:
        display_name = _clean(decision.display_name or decision.system_name) or f"Field {source_id}"
        system_name = _clean(decision.system_name) or generate_system_name(display_name)
        if not is_valid_system_name(system_name):
            raise ConfigurationError(
                f'Template field "{display_name}" requires a valid system name '
                "(letters, numbers, underscore, starting with a letter)",
                self.entity,
                source_id,
            )
        field_type = canonical_field_type(decision.type_name)
        if field_type is None:
            raise ConfigurationError(
                f'Template field "{display_name}" requires a field type before it can be created',
                self.entity,
                source_id,
            )
        decision.display_name = display_name
        decision.system_name = system_name
        decision.type_name = field_type

    def find_by_natural_key(self, decision: TemplateFieldDecision) -> Any:
        model = self.model_for(decision)
        return self.session.scalars(
            select(model).where(model.system_name == decision.system_name)
        ).first()

    def create(self, source_id: int, decision: TemplateFieldDecision) -> Any:
        return self.model_for(decision)(
            display_name=decision.display_name,
            system_name=decision.system_name,
            field_type=decision.type_name,
            hint=_clean(decision.hint) or None,
            is_required=decision.is_required,
            is_restricted=decision.is_restricted,
            is_enabled=True,
        )

    def after_create(self, decision: TemplateFieldDecision, record: Any) -> None:
        kind = tm.FieldKind.RESULT if decision.target_type == "result" else tm.FieldKind.CASE
        for option in decision.dropdown_options or []:
            self.session.add(
                tm.FieldOption(
                    field_kind=kind,
                    field_id=record.id,
                    name=option.name,
                    order=option.order,
                    is_default=option.is_default,
                )
            )
        if decision.dropdown_options:
            self.summary.add_detail("options_created", len(decision.dropdown_options))

    def copy_back(self, decision: TemplateFieldDecision, record: Any) -> dict[str, Any]:
        return {"system_name": record.system_name, "display_name": record.display_name}

    def assign(self, field_id: int, template_id: int, target_type: str) -> None:
        key = (target_type, template_id, field_id)
        if key in self.assignments:
            return
        self.assignments.add(key)
        template = self.session.get(tm.Template, template_id)
        if target_type == "result":
            field, fields = self.session.get(tm.ResultField, field_id), template.result_fields
        else:
            field, fields = self.session.get(tm.CaseField, field_id), template.case_fields
        if field is not None and field not in fields:
            fields.append(field)
            self.summary.add_detail("assignments_created")

    def resolve(self, decisions: dict[int, TemplateFieldDecision]) -> EntitySummary:
        self.summary = EntitySummary(self.entity)
        summary = self.summary
        target_types: dict[int, str] = {}

        for source_id, decision in decisions.items():
            summary.total += 1
            model = self.model_for(decision)
            target_types[source_id] = decision.target_type

            if decision.is_map:
                if decision.mapped_to is None:
                    raise ConfigurationError(
                        "Template field is configured to map but no target field was provided",
                        self.entity,
                        source_id,
                    )
                record = self.session.get(model, decision.mapped_to)
                if record is None:
                    kind = "Result" if decision.target_type == "result" else "Case"
                    raise ConfigurationError(
                        f"{kind} field {decision.mapped_to} selected for mapping was not found",
                        self.entity,
                        source_id,
                    )
                decision.system_name = record.system_name
                summary.mapped += 1
            else:
                self.validate(source_id, decision)
                record = self.find_by_natural_key(decision)
                if record is not None:
                    decision.mark_mapped(record.id, **self.copy_back(decision, record))
                    summary.mapped += 1
                else:
                    record = self.create(source_id, decision)
                    self.session.add(record)
                    self.session.flush()
                    self.after_create(decision, record)
                    decision.mark_mapped(record.id, **self.copy_back(decision, record))
                    summary.created += 1

            if self.maps is not None:
                self.maps[self.entity].set(source_id, decision.mapped_to)
            template_id = self.templates.template_id_for_name(decision.template_name)
            if template_id is not None:
                self.assign(decision.mapped_to, template_id, decision.target_type)

        for link in self.field_links:
            if link.template_id is None or link.field_id is None:
                continue
            decision = decisions.get(link.field_id)
            if decision is None or decision.mapped_to is None:
                continue
            template_id = self.template_ids.get(link.template_id)
            if template_id is None:
                template_id = self.templates.template_id_for_name(
                    self.template_names.get(link.template_id)
                )
                if template_id is None:
                    continue
                self.template_ids[link.template_id] = template_id
            self.assign(decision.mapped_to, template_id, target_types[link.field_id])

        self.session.flush()
        logger.info(summary.status(), context={"entity": self.entity, **summary.details})
        return summary


def resolve_user_groups(
    session: Session, rows: Iterable[UserGroupRecord], maps: IdentifierMaps
) -> EntitySummary:
    """
    Add mapped users to mapped groups.

    Memberships that already exist count as mapped; rows whose user or group
    was not mapped are skipped.
    """
    summary = EntitySummary("user_groups")
    seen: set[tuple[int, int]] = set()
    for row in rows:
        user_id = maps.resolve("users", row.user_id)
        group_id = maps.resolve("groups", row.group_id)
        if user_id is None or group_id is None:
            summary.add_detail("skipped")
            continue
        if (user_id, group_id) in seen:
            continue
        seen.add((user_id, group_id))
        summary.total += 1
        existing = session.execute(
            select(tm.user_groups).where(
                tm.user_groups.c.user_id == user_id, tm.user_groups.c.group_id == group_id
            )
        ).first()
        if existing is not None:
            summary.mapped += 1
            continue
        session.execute(tm.user_groups.insert().values(user_id=user_id, group_id=group_id))
        summary.created += 1
    return summary


def load_field_metadata(session: Session, kind: tm.FieldKind) -> dict[str, FieldMetadata]:
    """Target fields of one kind keyed by system name, with their options."""
    model = tm.ResultField if kind == tm.FieldKind.RESULT else tm.CaseField
    options: dict[int, dict[str, int]] = {}
    for option in session.scalars(
        select(tm.FieldOption).where(tm.FieldOption.field_kind == kind).order_by(tm.FieldOption.order)
    ):
        options.setdefault(option.field_id, {})[option.name.lower()] = option.id

    return {
        record.system_name: FieldMetadata(
            field_id=record.id,
            system_name=record.system_name,
            display_name=record.display_name,
            field_type=record.field_type,
            options_by_name=options.get(record.id, {}),
        )
        for record in session.scalars(select(model).where(model.is_enabled.is_(True)))
    }


RESOLVERS: dict[str, type[ReferenceResolver]] = {
    "workflows": WorkflowResolver,
    "statuses": StatusResolver,
    "groups": GroupResolver,
    "tags": TagResolver,
    "roles": RoleResolver,
    "milestone_types": MilestoneTypeResolver,
    "configurations": ConfigurationResolver,
    "users": UserResolver,
    "issue_targets": IssueTargetResolver,
}
