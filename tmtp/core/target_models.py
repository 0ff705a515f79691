"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMTP, licensed under the MIT License.
See LICENSE file for details.
"""

"""
SQLAlchemy ORM models for the TestPlanIt tables the import writes into.

Only the columns the importer reads or writes are modeled. Rich-text columns
(notes, docs, missions, step texts) hold canonical documents as JSON.
"""

import enum

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from tmtp.core.db_models import Base, utc_now


class WorkflowType(enum.Enum):
    NOT_STARTED = "NOT_STARTED"
    IN_PROGRESS = "IN_PROGRESS"
    DONE = "DONE"


class WorkflowScope(enum.Enum):
    CASES = "CASES"
    RUNS = "RUNS"
    SESSIONS = "SESSIONS"


class IntegrationProvider(enum.Enum):
    JIRA = "JIRA"
    GITHUB = "GITHUB"
    AZURE_DEVOPS = "AZURE_DEVOPS"
    SIMPLE_URL = "SIMPLE_URL"


class CaseSource(enum.Enum):
    MANUAL = "MANUAL"
    JUNIT = "JUNIT"


class TestRunType(enum.Enum):
    REGULAR = "REGULAR"
    JUNIT = "JUNIT"


class JUnitResultType(enum.Enum):
    PASSED = "PASSED"
    FAILURE = "FAILURE"
    ERROR = "ERROR"
    SKIPPED = "SKIPPED"


class FieldKind(enum.Enum):
    CASE = "CASE"
    RESULT = "RESULT"


def _link_table(name: str, left: str, left_fk: str, right: str, right_fk: str) -> Table:
    return Table(
        name,
        Base.metadata,
        Column(left, Integer, ForeignKey(left_fk, ondelete="CASCADE"), primary_key=True),
        Column(right, Integer, ForeignKey(right_fk, ondelete="CASCADE"), primary_key=True),
    )


# Association tables for many-to-many relationships
user_groups = _link_table("user_groups", "user_id", "users.id", "group_id", "groups.id")
status_scope_assignments = _link_table(
    "status_scope_assignments", "status_id", "statuses.id", "scope_id", "status_scopes.id"
)
project_statuses = _link_table(
    "project_statuses", "project_id", "projects.id", "status_id", "statuses.id"
)
project_workflows = _link_table(
    "project_workflows", "project_id", "projects.id", "workflow_id", "workflows.id"
)
project_milestone_types = _link_table(
    "project_milestone_types", "project_id", "projects.id", "milestone_type_id", "milestone_types.id"
)
project_templates = _link_table(
    "project_templates", "project_id", "projects.id", "template_id", "templates.id"
)
template_case_fields = _link_table(
    "template_case_fields", "template_id", "templates.id", "field_id", "case_fields.id"
)
template_result_fields = _link_table(
    "template_result_fields", "template_id", "templates.id", "field_id", "result_fields.id"
)
repository_case_tags = _link_table(
    "repository_case_tags", "case_id", "repository_cases.id", "tag_id", "tags.id"
)
session_tags = _link_table("session_tags", "session_id", "sessions.id", "tag_id", "tags.id")
test_run_tags = _link_table("test_run_tags", "test_run_id", "test_runs.id", "tag_id", "tags.id")
repository_case_issues = _link_table(
    "repository_case_issues", "case_id", "repository_cases.id", "issue_id", "issues.id"
)
test_run_issues = _link_table(
    "test_run_issues", "test_run_id", "test_runs.id", "issue_id", "issues.id"
)
test_run_result_issues = _link_table(
    "test_run_result_issues", "result_id", "test_run_results.id", "issue_id", "issues.id"
)
session_issues = _link_table("session_issues", "session_id", "sessions.id", "issue_id", "issues.id")
session_result_issues = _link_table(
    "session_result_issues", "result_id", "session_results.id", "issue_id", "issues.id"
)


class Color(Base):
    __tablename__ = "colors"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100))
    hex_value = Column(String(7), nullable=False, unique=True)
    order = Column(Integer, default=0)

    def __repr__(self):
        return f"<Color(id={self.id}, hex='{self.hex_value}')>"


class Role(Base):
    __tablename__ = "roles"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False, unique=True)
    is_default = Column(Boolean, nullable=False, default=False)

    def __repr__(self):
        return f"<Role(id={self.id}, name='{self.name}')>"


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(255), nullable=False, unique=True)
    name = Column(String(255), nullable=False)
    password_hash = Column(String(255), nullable=False)
    role_id = Column(Integer, ForeignKey("roles.id"), nullable=False)
    access = Column(String(50), nullable=False, default="USER")
    is_active = Column(Boolean, nullable=False, default=True)
    is_api = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=utc_now)

    role = relationship("Role")
    groups = relationship("Group", secondary=user_groups, backref="users")

    def __repr__(self):
        return f"<User(id={self.id}, email='{self.email}')>"


class Group(Base):
    __tablename__ = "groups"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False, unique=True)
    note = Column(Text)

    def __repr__(self):
        return f"<Group(id={self.id}, name='{self.name}')>"


class Workflow(Base):
    __tablename__ = "workflows"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    icon = Column(String(100), nullable=False)
    color = Column(String(20), nullable=False)
    workflow_type = Column(Enum(WorkflowType), nullable=False, default=WorkflowType.NOT_STARTED)
    scope = Column(Enum(WorkflowScope), nullable=False, default=WorkflowScope.CASES)
    is_default = Column(Boolean, nullable=False, default=False)
    is_enabled = Column(Boolean, nullable=False, default=True)
    order = Column(Integer, default=0)

    __table_args__ = (Index("idx_workflow_name", "name"),)

    def __repr__(self):
        return f"<Workflow(id={self.id}, name='{self.name}', scope='{self.scope}')>"


class StatusScope(Base):
    __tablename__ = "status_scopes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), nullable=False, unique=True)


class Status(Base):
    __tablename__ = "statuses"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    system_name = Column(String(255), nullable=False, unique=True)
    alias = Column(String(255))
    color_id = Column(Integer, ForeignKey("colors.id"), nullable=False)
    is_success = Column(Boolean, nullable=False, default=False)
    is_failure = Column(Boolean, nullable=False, default=False)
    is_completed = Column(Boolean, nullable=False, default=False)
    is_enabled = Column(Boolean, nullable=False, default=True)
    order = Column(Integer, default=0)

    color = relationship("Color")
    scopes = relationship("StatusScope", secondary=status_scope_assignments)

    def __repr__(self):
        return f"<Status(id={self.id}, system_name='{self.system_name}')>"


class MilestoneType(Base):
    __tablename__ = "milestone_types"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False, unique=True)
    icon = Column(String(100))
    is_default = Column(Boolean, nullable=False, default=False)


class Configuration(Base):
    __tablename__ = "configurations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False, unique=True)


class Tag(Base):
    __tablename__ = "tags"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False, unique=True)

    def __repr__(self):
        return f"<Tag(id={self.id}, name='{self.name}')>"


class Template(Base):
    __tablename__ = "templates"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False, unique=True)
    is_default = Column(Boolean, nullable=False, default=False)
    is_enabled = Column(Boolean, nullable=False, default=True)

    case_fields = relationship("CaseField", secondary=template_case_fields)
    result_fields = relationship("ResultField", secondary=template_result_fields)

    def __repr__(self):
        return f"<Template(id={self.id}, name='{self.name}')>"


class CaseField(Base):
    __tablename__ = "case_fields"

    id = Column(Integer, primary_key=True, autoincrement=True)
    display_name = Column(String(255), nullable=False)
    system_name = Column(String(255), nullable=False, unique=True)
    field_type = Column(String(50), nullable=False)
    hint = Column(Text)
    is_required = Column(Boolean, nullable=False, default=False)
    is_restricted = Column(Boolean, nullable=False, default=False)
    is_enabled = Column(Boolean, nullable=False, default=True)


class ResultField(Base):
    __tablename__ = "result_fields"

    id = Column(Integer, primary_key=True, autoincrement=True)
    display_name = Column(String(255), nullable=False)
    system_name = Column(String(255), nullable=False, unique=True)
    field_type = Column(String(50), nullable=False)
    hint = Column(Text)
    is_required = Column(Boolean, nullable=False, default=False)
    is_restricted = Column(Boolean, nullable=False, default=False)
    is_enabled = Column(Boolean, nullable=False, default=True)


class FieldOption(Base):
    """Option of a dropdown or multi-select case/result field."""

    __tablename__ = "field_options"

    id = Column(Integer, primary_key=True, autoincrement=True)
    field_kind = Column(Enum(FieldKind), nullable=False)
    field_id = Column(Integer, nullable=False)
    name = Column(String(255), nullable=False)
    order = Column(Integer, default=0)
    is_default = Column(Boolean, nullable=False, default=False)

    __table_args__ = (Index("idx_field_option_field", "field_kind", "field_id"),)


class Project(Base):
    __tablename__ = "projects"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False, unique=True)
    note = Column(JSON)
    docs = Column(JSON)
    is_completed = Column(Boolean, nullable=False, default=False)
    completed_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=utc_now)
    created_by_id = Column(Integer, ForeignKey("users.id"))

    statuses = relationship("Status", secondary=project_statuses)
    workflows = relationship("Workflow", secondary=project_workflows)
    milestone_types = relationship("MilestoneType", secondary=project_milestone_types)
    templates = relationship("Template", secondary=project_templates)

    def __repr__(self):
        return f"<Project(id={self.id}, name='{self.name}')>"


class Milestone(Base):
    __tablename__ = "milestones"

    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    milestone_type_id = Column(Integer, ForeignKey("milestone_types.id"), nullable=False)
    parent_id = Column(Integer, ForeignKey("milestones.id"))
    root_id = Column(Integer, ForeignKey("milestones.id"))
    name = Column(String(255), nullable=False)
    note = Column(JSON)
    docs = Column(JSON)
    is_started = Column(Boolean, nullable=False, default=False)
    is_completed = Column(Boolean, nullable=False, default=False)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=utc_now)
    created_by_id = Column(Integer, ForeignKey("users.id"))

    __table_args__ = (Index("idx_milestone_project_name", "project_id", "name"),)

    def __repr__(self):
        return f"<Milestone(id={self.id}, name='{self.name}')>"


class Session(Base):
    """An exploratory testing session."""

    __tablename__ = "sessions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    template_id = Column(Integer, ForeignKey("templates.id"), nullable=False)
    state_id = Column(Integer, ForeignKey("workflows.id"), nullable=False)
    milestone_id = Column(Integer, ForeignKey("milestones.id"))
    configuration_id = Column(Integer, ForeignKey("configurations.id"))
    assigned_to_id = Column(Integer, ForeignKey("users.id"))
    name = Column(String(255), nullable=False)
    note = Column(JSON)
    mission = Column(JSON)
    estimate = Column(Integer)
    forecast = Column(Integer)
    elapsed = Column(Integer)
    is_completed = Column(Boolean, nullable=False, default=False)
    completed_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=utc_now)
    created_by_id = Column(Integer, ForeignKey("users.id"))

    __table_args__ = (Index("idx_session_project_name", "project_id", "name"),)


class SessionVersion(Base):
    __tablename__ = "session_versions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(Integer, ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False)
    version = Column(Integer, nullable=False, default=1)
    name = Column(String(255), nullable=False)
    data = Column(JSON)
    created_at = Column(DateTime, nullable=False, default=utc_now)


class SessionResult(Base):
    __tablename__ = "session_results"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(Integer, ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False)
    status_id = Column(Integer, ForeignKey("statuses.id"), nullable=False)
    result_data = Column(JSON)
    elapsed = Column(Integer)
    created_at = Column(DateTime, nullable=False, default=utc_now)
    created_by_id = Column(Integer, ForeignKey("users.id"))


class SessionFieldValue(Base):
    __tablename__ = "session_field_values"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(Integer, ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False)
    field_id = Column(Integer, ForeignKey("case_fields.id"), nullable=False)
    value = Column(JSON)

    __table_args__ = (UniqueConstraint("session_id", "field_id", name="uq_session_field_value"),)


class Repository(Base):
    __tablename__ = "repositories"

    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    name = Column(String(255), nullable=False)
    created_at = Column(DateTime, nullable=False, default=utc_now)


class RepositoryFolder(Base):
    __tablename__ = "repository_folders"

    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    repository_id = Column(
        Integer, ForeignKey("repositories.id", ondelete="CASCADE"), nullable=False
    )
    parent_id = Column(Integer, ForeignKey("repository_folders.id"))
    name = Column(String(255), nullable=False)
    docs = Column(JSON)
    order = Column(Integer, default=0)
    created_at = Column(DateTime, nullable=False, default=utc_now)

    __table_args__ = (Index("idx_folder_repo_parent_name", "repository_id", "parent_id", "name"),)

    def __repr__(self):
        return f"<RepositoryFolder(id={self.id}, name='{self.name}', parent={self.parent_id})>"


class RepositoryCase(Base):
    __tablename__ = "repository_cases"

    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    repository_id = Column(Integer, ForeignKey("repositories.id"), nullable=False)
    folder_id = Column(Integer, ForeignKey("repository_folders.id"), nullable=False)
    template_id = Column(Integer, ForeignKey("templates.id"), nullable=False)
    state_id = Column(Integer, ForeignKey("workflows.id"), nullable=False)
    name = Column(String(1024), nullable=False)
    class_name = Column(String(1024))
    source = Column(Enum(CaseSource), nullable=False, default=CaseSource.MANUAL)
    automated = Column(Boolean, nullable=False, default=False)
    estimate = Column(Integer)
    order = Column(Integer, default=0)
    current_version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, nullable=False, default=utc_now)
    created_by_id = Column(Integer, ForeignKey("users.id"))

    steps = relationship("Step", back_populates="test_case", order_by="Step.order")

    __table_args__ = (Index("idx_case_project_repo_name", "project_id", "repository_id", "name"),)

    def __repr__(self):
        return f"<RepositoryCase(id={self.id}, name='{self.name}')>"


class RepositoryCaseVersion(Base):
    __tablename__ = "repository_case_versions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    case_id = Column(Integer, ForeignKey("repository_cases.id", ondelete="CASCADE"), nullable=False)
    version = Column(Integer, nullable=False, default=1)
    name = Column(String(1024), nullable=False)
    data = Column(JSON)
    created_at = Column(DateTime, nullable=False, default=utc_now)


class Step(Base):
    __tablename__ = "steps"

    id = Column(Integer, primary_key=True, autoincrement=True)
    test_case_id = Column(
        Integer, ForeignKey("repository_cases.id", ondelete="CASCADE"), nullable=False
    )
    order = Column(Integer, nullable=False, default=0)
    step = Column(JSON)
    expected_result = Column(JSON)

    test_case = relationship("RepositoryCase", back_populates="steps")


class CaseFieldValue(Base):
    __tablename__ = "case_field_values"

    id = Column(Integer, primary_key=True, autoincrement=True)
    test_case_id = Column(
        Integer, ForeignKey("repository_cases.id", ondelete="CASCADE"), nullable=False
    )
    field_id = Column(Integer, ForeignKey("case_fields.id"), nullable=False)
    value = Column(JSON)

    __table_args__ = (UniqueConstraint("test_case_id", "field_id", name="uq_case_field_value"),)


class TestRun(Base):
    __test__ = False

    __tablename__ = "test_runs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    state_id = Column(Integer, ForeignKey("workflows.id"), nullable=False)
    milestone_id = Column(Integer, ForeignKey("milestones.id"))
    configuration_id = Column(Integer, ForeignKey("configurations.id"))
    name = Column(String(1024), nullable=False)
    note = Column(JSON)
    docs = Column(JSON)
    test_run_type = Column(Enum(TestRunType), nullable=False, default=TestRunType.REGULAR)
    forecast = Column(Integer)
    elapsed = Column(Integer)
    is_completed = Column(Boolean, nullable=False, default=False)
    completed_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=utc_now)
    created_by_id = Column(Integer, ForeignKey("users.id"))

    __table_args__ = (Index("idx_run_project_name", "project_id", "name"),)

    def __repr__(self):
        return f"<TestRun(id={self.id}, name='{self.name}', type='{self.test_run_type}')>"


class TestRunCase(Base):
    __test__ = False

    __tablename__ = "test_run_cases"

    id = Column(Integer, primary_key=True, autoincrement=True)
    test_run_id = Column(Integer, ForeignKey("test_runs.id", ondelete="CASCADE"), nullable=False)
    repository_case_id = Column(Integer, ForeignKey("repository_cases.id"), nullable=False)
    status_id = Column(Integer, ForeignKey("statuses.id"))
    assigned_to_id = Column(Integer, ForeignKey("users.id"))
    order = Column(Integer, nullable=False, default=0)
    elapsed = Column(Integer)
    is_completed = Column(Boolean, nullable=False, default=False)
    completed_at = Column(DateTime)

    __table_args__ = (
        UniqueConstraint("test_run_id", "repository_case_id", name="uq_run_case"),
    )


class TestRunResult(Base):
    __test__ = False

    __tablename__ = "test_run_results"

    id = Column(Integer, primary_key=True, autoincrement=True)
    test_run_id = Column(Integer, ForeignKey("test_runs.id", ondelete="CASCADE"), nullable=False)
    test_run_case_id = Column(
        Integer, ForeignKey("test_run_cases.id", ondelete="CASCADE"), nullable=False
    )
    status_id = Column(Integer, ForeignKey("statuses.id"), nullable=False)
    executed_by_id = Column(Integer, ForeignKey("users.id"))
    executed_at = Column(DateTime, nullable=False, default=utc_now)
    elapsed = Column(Integer)
    notes = Column(JSON)
    is_deleted = Column(Boolean, nullable=False, default=False)

    __table_args__ = (Index("idx_result_run_case", "test_run_case_id"),)


class ResultFieldValue(Base):
    __tablename__ = "result_field_values"

    id = Column(Integer, primary_key=True, autoincrement=True)
    test_run_result_id = Column(
        Integer, ForeignKey("test_run_results.id", ondelete="CASCADE"), nullable=False
    )
    field_id = Column(Integer, ForeignKey("result_fields.id"), nullable=False)
    value = Column(JSON)

    __table_args__ = (
        UniqueConstraint("test_run_result_id", "field_id", name="uq_result_field_value"),
    )


class TestRunStepResult(Base):
    __test__ = False

    __tablename__ = "test_run_step_results"

    id = Column(Integer, primary_key=True, autoincrement=True)
    test_run_result_id = Column(
        Integer, ForeignKey("test_run_results.id", ondelete="CASCADE"), nullable=False
    )
    step_id = Column(Integer, ForeignKey("steps.id", ondelete="CASCADE"), nullable=False)
    status_id = Column(Integer, ForeignKey("statuses.id"), nullable=False)
    notes = Column(JSON)

    __table_args__ = (UniqueConstraint("test_run_result_id", "step_id", name="uq_step_result"),)


class Integration(Base):
    """An issue tracker the imported issues point at."""

    __tablename__ = "integrations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False, unique=True)
    provider = Column(Enum(IntegrationProvider), nullable=False)
    base_url = Column(String(1024))
    url_template = Column(String(1024))


class Issue(Base):
    __tablename__ = "issues"

    id = Column(Integer, primary_key=True, autoincrement=True)
    integration_id = Column(Integer, ForeignKey("integrations.id"), nullable=False)
    project_id = Column(Integer, ForeignKey("projects.id"))
    name = Column(String(255), nullable=False)
    title = Column(String(1024), nullable=False)
    external_id = Column(String(255), nullable=False)
    external_key = Column(String(255))
    external_url = Column(String(2048))
    created_at = Column(DateTime, nullable=False, default=utc_now)

    __table_args__ = (
        UniqueConstraint("external_id", "integration_id", name="uq_issue_external_integration"),
    )


class JUnitTestSuite(Base):
    __tablename__ = "junit_test_suites"

    id = Column(Integer, primary_key=True, autoincrement=True)
    test_run_id = Column(Integer, ForeignKey("test_runs.id", ondelete="CASCADE"), nullable=False)
    name = Column(String(1024), nullable=False)
    time = Column(Float)
    tests = Column(Integer, default=0)
    failures = Column(Integer, default=0)
    errors = Column(Integer, default=0)
    skipped = Column(Integer, default=0)
    timestamp = Column(DateTime)


class JUnitTestResult(Base):
    __tablename__ = "junit_test_results"

    id = Column(Integer, primary_key=True, autoincrement=True)
    test_suite_id = Column(
        Integer, ForeignKey("junit_test_suites.id", ondelete="CASCADE"), nullable=False
    )
    repository_case_id = Column(Integer, ForeignKey("repository_cases.id"), nullable=False)
    status_id = Column(Integer, ForeignKey("statuses.id"))
    result_type = Column(Enum(JUnitResultType), nullable=False, default=JUnitResultType.PASSED)
    time = Column(Float)
    executed_at = Column(DateTime)
    message = Column(Text)
    content = Column(Text)
