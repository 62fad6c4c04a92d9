from importlib.metadata import version

from .add_feature import AddFeatureWorkflow, detect_project
from .canonical import to_canonical_json
from .documents import DocumentFiles
from .executor import SpecDocumentWorkflow
from .features import kebab_case, next_spec_feature_id, resolve_feature_slug, resolve_spec_feature_id
from .handlers import DOCUMENT_PHASES, HandlerOutcome, TurnContext, build_document
from .instructions import InstructionCatalog
from .models import (
    AddFeatureTurnRequest,
    DocumentConfig,
    DocumentStatus,
    Platform,
    SddState,
    SpecTurnRequest,
    TurnResult,
    WorkflowContext,
    WorkflowKind,
)
from .routers import (
    BuildResultRouter,
    FatalErrorGate,
    IntegrationRouter,
    PodInstallRouter,
    ProjectValidRouter,
    PropertiesFulfilledRouter,
    has_fatal_errors,
)
from .settings import RuntimeSettings
from .state_store import StaleStateError, WorkflowStateStore


def get_version() -> str:
    try:
        return version("magi-workflow")
    except Exception:
        return "0.0.0"


__all__ = [
    "AddFeatureTurnRequest",
    "AddFeatureWorkflow",
    "BuildResultRouter",
    "DOCUMENT_PHASES",
    "DocumentConfig",
    "DocumentFiles",
    "DocumentStatus",
    "FatalErrorGate",
    "HandlerOutcome",
    "InstructionCatalog",
    "IntegrationRouter",
    "Platform",
    "PodInstallRouter",
    "ProjectValidRouter",
    "PropertiesFulfilledRouter",
    "RuntimeSettings",
    "SddState",
    "SpecDocumentWorkflow",
    "SpecTurnRequest",
    "StaleStateError",
    "TurnContext",
    "TurnResult",
    "WorkflowContext",
    "WorkflowKind",
    "WorkflowStateStore",
    "build_document",
    "detect_project",
    "get_version",
    "has_fatal_errors",
    "kebab_case",
    "next_spec_feature_id",
    "resolve_feature_slug",
    "resolve_spec_feature_id",
    "to_canonical_json",
]
