"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMTP, licensed under the MIT License.
See LICENSE file for details.
"""

"""
Entity transformers.

Each transformer imports one staged dataset into the target tables. They
share one ``ImportContext`` per run and are executed in dependency order by
``tmtp.importer.TestmoImporter``.
"""

from tmtp.transformers.automation import (
    AutomationCaseTransformer,
    AutomationRunTagTransformer,
    AutomationRunTestTransformer,
    AutomationRunTransformer,
)
from tmtp.transformers.base import (
    CREATED,
    IGNORED,
    MAPPED,
    SKIPPED,
    AssociationTransformer,
    ImportContext,
    Transformer,
)
from tmtp.transformers.cases import (
    CaseStepTransformer,
    CaseTagTransformer,
    CaseTransformer,
    CaseValueTransformer,
    CaseVersionTransformer,
)
from tmtp.transformers.issues import (
    CaseIssueTransformer,
    IssueTransformer,
    RunIssueTransformer,
    RunResultIssueTransformer,
    SessionIssueTransformer,
    SessionResultIssueTransformer,
)
from tmtp.transformers.links import (
    AutomationRunLinkTransformer,
    MilestoneLinkTransformer,
    ProjectLinkTransformer,
    RunLinkTransformer,
)
from tmtp.transformers.milestones import MilestoneTransformer
from tmtp.transformers.projects import ProjectTransformer
from tmtp.transformers.repositories import FolderTransformer, RepositoryTransformer
from tmtp.transformers.results import StepResultTransformer, TestRunResultTransformer
from tmtp.transformers.runs import RunTagTransformer, TestRunCaseTransformer, TestRunTransformer
from tmtp.transformers.sessions import (
    SessionResultTransformer,
    SessionTagTransformer,
    SessionTransformer,
    SessionValueTransformer,
)

__all__ = [
    "CREATED",
    "IGNORED",
    "MAPPED",
    "SKIPPED",
    "AssociationTransformer",
    "AutomationCaseTransformer",
    "AutomationRunLinkTransformer",
    "AutomationRunTagTransformer",
    "AutomationRunTestTransformer",
    "AutomationRunTransformer",
    "CaseIssueTransformer",
    "CaseStepTransformer",
    "CaseTagTransformer",
    "CaseTransformer",
    "CaseValueTransformer",
    "CaseVersionTransformer",
    "FolderTransformer",
    "ImportContext",
    "IssueTransformer",
    "MilestoneLinkTransformer",
    "MilestoneTransformer",
    "ProjectLinkTransformer",
    "ProjectTransformer",
    "RepositoryTransformer",
    "RunIssueTransformer",
    "RunLinkTransformer",
    "RunResultIssueTransformer",
    "RunTagTransformer",
    "SessionIssueTransformer",
    "SessionResultIssueTransformer",
    "SessionResultTransformer",
    "SessionTagTransformer",
    "SessionTransformer",
    "SessionValueTransformer",
    "StepResultTransformer",
    "TestRunCaseTransformer",
    "TestRunResultTransformer",
    "TestRunTransformer",
    "Transformer",
]
