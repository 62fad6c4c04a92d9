from __future__ import annotations

import logging
import operator
import sqlite3
from collections.abc import Iterator, Mapping
from contextlib import closing, contextmanager
from pathlib import Path
from typing import Annotated, Any, TypedDict

from langgraph.checkpoint.sqlite import SqliteSaver
from langgraph.graph import END, START, StateGraph
from langgraph.types import Command, interrupt
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from .executor import rejected_turn, validation_messages
from .features import resolve_feature_slug
from .models import AddFeatureTurnRequest, Platform, TurnResult, WorkflowContext, WorkflowKind
from .routers import (
    BuildResultRouter,
    FatalErrorGate,
    IntegrationRouter,
    PodInstallRouter,
    ProjectValidRouter,
    PropertiesFulfilledRouter,
    missing_template_properties,
)
from .settings import RuntimeSettings
from .state_store import StaleStateError, WorkflowStateStore

logger = logging.getLogger(__name__)

VALIDATE_PROJECT = "validateProject"
FETCH_TEMPLATES = "fetchFeatureTemplates"
SELECT_TEMPLATE = "selectFeatureTemplate"
EXTRACT_TEMPLATE_PROPERTIES = "extractFeatureTemplateProperties"
CHECK_APP_CONFIGURATION = "checkExistingAppConfiguration"
COLLECT_TEMPLATE_PROPERTIES = "getFeatureTemplatePropertiesInput"
EXTRACT_PROPERTIES_FROM_INPUT = "extractFeatureTemplatePropertiesFromInput"
INTEGRATE_FEATURE = "integrateFeature"
SYNC_PROJECT = "syncProject"
POD_INSTALL = "podInstall"
VALIDATE_BUILD = "validateBuild"
RECOVER_BUILD = "recoverBuild"
DEPLOY_APP = "deployApp"
FINISH = "finish"
WORKFLOW_FAILURE = "workflowFailure"
NOT_STARTED = "notStarted"


class AddFeatureState(TypedDict, total=False):
    project_path: str
    feature_slug: str
    feature_description: str
    platform: str | None
    project_name: str | None
    valid_project: bool
    podfile_modified: bool
    workflow_fatal_error_messages: Annotated[list[str], operator.add]
    available_templates: list[str]
    selected_template: str | None
    template_properties_metadata: dict[str, dict[str, Any]]
    template_properties: dict[str, str]
    template_properties_user_input: str
    files_modified: list[str]
    integration_successful: bool
    integration_error_messages: list[str]
    build_successful: bool
    build_attempt_count: int
    build_output: str
    deployed: bool
    outcome: str
    summary: str


# ---------------------------------------------------------------------------
# Agent result schemas for guidance nodes
# ---------------------------------------------------------------------------


class AgentResult(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


class TemplateFetchResult(AgentResult):
    templates: list[str]


class TemplateSelectionResult(AgentResult):
    selected_template: str = Field(min_length=1)


class TemplateProperty(AgentResult):
    description: str = ""
    required: bool = False
    default: str | None = None


class TemplatePropertiesResult(AgentResult):
    properties: dict[str, TemplateProperty] = Field(default_factory=dict)


class AppConfigurationResult(AgentResult):
    already_configured: list[str] = Field(default_factory=list)
    needs_configuration: list[str] = Field(default_factory=list)


class TemplatePropertiesInput(AgentResult):
    user_input: str = Field(min_length=1)


class ExtractedPropertiesResult(AgentResult):
    properties: dict[str, str] = Field(default_factory=dict)


class IntegrationResult(AgentResult):
    integration_successful: bool
    files_modified: list[str] = Field(default_factory=list)
    integration_error_messages: list[str] = Field(default_factory=list)


class ProjectSyncResult(AgentResult):
    sync_successful: bool
    error_message: str | None = None


class PodInstallResult(AgentResult):
    success: bool
    error_message: str | None = None


class BuildValidationResult(AgentResult):
    build_successful: bool
    build_output: str = ""


class BuildRecoveryResult(AgentResult):
    fixes_applied: list[str] = Field(default_factory=list)


class DeploymentResult(AgentResult):
    deployed: bool
    error_message: str | None = None


RESULT_MODELS: dict[str, type[AgentResult]] = {
    FETCH_TEMPLATES: TemplateFetchResult,
    SELECT_TEMPLATE: TemplateSelectionResult,
    EXTRACT_TEMPLATE_PROPERTIES: TemplatePropertiesResult,
    CHECK_APP_CONFIGURATION: AppConfigurationResult,
    COLLECT_TEMPLATE_PROPERTIES: TemplatePropertiesInput,
    EXTRACT_PROPERTIES_FROM_INPUT: ExtractedPropertiesResult,
    INTEGRATE_FEATURE: IntegrationResult,
    SYNC_PROJECT: ProjectSyncResult,
    POD_INSTALL: PodInstallResult,
    VALIDATE_BUILD: BuildValidationResult,
    RECOVER_BUILD: BuildRecoveryResult,
    DEPLOY_APP: DeploymentResult,
}


# ---------------------------------------------------------------------------
# Project detection
# ---------------------------------------------------------------------------


def _ios_project_name(project_path: Path) -> str | None:
    for entry in sorted(project_path.iterdir()):
        if entry.suffix == ".xcodeproj" and entry.is_dir() and (entry / "project.pbxproj").is_file():
            return entry.stem
    return None


def _is_android_project(project_path: Path) -> bool:
    has_build = (project_path / "build.gradle").is_file() or (project_path / "build.gradle.kts").is_file()
    has_settings = (project_path / "settings.gradle").is_file() or (project_path / "settings.gradle.kts").is_file()
    has_app = (project_path / "app").is_dir()
    has_manifest = (project_path / "app" / "src" / "main" / "AndroidManifest.xml").is_file()
    return has_build and has_settings and has_app and has_manifest


def detect_project(project_path: Path) -> tuple[Platform, str] | None:
    """Return (platform, project name) for an iOS or Android project root, else None."""
    ios_name = _ios_project_name(project_path)
    if ios_name is not None:
        return Platform.IOS, ios_name
    if _is_android_project(project_path):
        return Platform.ANDROID, project_path.name
    return None


def _bullets(items: list[str]) -> str:
    return "\n".join(f"- {item}" for item in items) or "- (none)"


class AddFeatureWorkflow:
    """Add-feature StateGraph: validate -> templates -> template properties -> integrate -> sync -> [pod install] -> build -> deploy.

    Guidance nodes suspend with ``interrupt()`` and are resumed on a later
    turn with the agent's validated result. Checkpoints live in SQLite so a
    fresh process can resume any pending step.
    """

    def __init__(self, *, settings: RuntimeSettings | None = None) -> None:
        self.settings = settings or RuntimeSettings.from_env()
        self.project_valid_router = ProjectValidRouter(FETCH_TEMPLATES, WORKFLOW_FAILURE)
        self.templates_gate = FatalErrorGate(SELECT_TEMPLATE, WORKFLOW_FAILURE)
        self.properties_router = PropertiesFulfilledRouter(INTEGRATE_FEATURE, COLLECT_TEMPLATE_PROPERTIES)
        self.integration_router = IntegrationRouter(SYNC_PROJECT, WORKFLOW_FAILURE)
        self.sync_gate = FatalErrorGate(POD_INSTALL, WORKFLOW_FAILURE)
        self.pod_install_router = PodInstallRouter(POD_INSTALL, VALIDATE_BUILD)
        self.pod_install_gate = FatalErrorGate(VALIDATE_BUILD, WORKFLOW_FAILURE)
        self.build_router = BuildResultRouter(
            DEPLOY_APP, RECOVER_BUILD, WORKFLOW_FAILURE, max_attempts=self.settings.max_build_attempts
        )
        self.deploy_gate = FatalErrorGate(FINISH, WORKFLOW_FAILURE)

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(AddFeatureState)
        graph.add_node(VALIDATE_PROJECT, self._validate_project_node)
        graph.add_node(FETCH_TEMPLATES, self._fetch_templates_node)
        graph.add_node(SELECT_TEMPLATE, self._select_template_node)
        graph.add_node(EXTRACT_TEMPLATE_PROPERTIES, self._extract_template_properties_node)
        graph.add_node(CHECK_APP_CONFIGURATION, self._check_app_configuration_node)
        graph.add_node(COLLECT_TEMPLATE_PROPERTIES, self._collect_template_properties_node)
        graph.add_node(EXTRACT_PROPERTIES_FROM_INPUT, self._extract_properties_from_input_node)
        graph.add_node(INTEGRATE_FEATURE, self._integrate_feature_node)
        graph.add_node(SYNC_PROJECT, self._sync_project_node)
        graph.add_node(POD_INSTALL, self._pod_install_node)
        graph.add_node(VALIDATE_BUILD, self._validate_build_node)
        graph.add_node(RECOVER_BUILD, self._recover_build_node)
        graph.add_node(DEPLOY_APP, self._deploy_app_node)
        graph.add_node(FINISH, self._finish_node)
        graph.add_node(WORKFLOW_FAILURE, self._failure_node)

        graph.add_edge(START, VALIDATE_PROJECT)
        graph.add_conditional_edges(
            VALIDATE_PROJECT,
            self.project_valid_router.execute,
            {FETCH_TEMPLATES: FETCH_TEMPLATES, WORKFLOW_FAILURE: WORKFLOW_FAILURE},
        )
        graph.add_conditional_edges(
            FETCH_TEMPLATES,
            self.templates_gate.execute,
            {SELECT_TEMPLATE: SELECT_TEMPLATE, WORKFLOW_FAILURE: WORKFLOW_FAILURE},
        )
        graph.add_edge(SELECT_TEMPLATE, EXTRACT_TEMPLATE_PROPERTIES)
        graph.add_edge(EXTRACT_TEMPLATE_PROPERTIES, CHECK_APP_CONFIGURATION)
        properties_edges = {
            INTEGRATE_FEATURE: INTEGRATE_FEATURE,
            COLLECT_TEMPLATE_PROPERTIES: COLLECT_TEMPLATE_PROPERTIES,
        }
        graph.add_conditional_edges(CHECK_APP_CONFIGURATION, self.properties_router.execute, properties_edges)
        graph.add_edge(COLLECT_TEMPLATE_PROPERTIES, EXTRACT_PROPERTIES_FROM_INPUT)
        graph.add_conditional_edges(EXTRACT_PROPERTIES_FROM_INPUT, self.properties_router.execute, properties_edges)
        graph.add_conditional_edges(
            INTEGRATE_FEATURE,
            self.integration_router.execute,
            {SYNC_PROJECT: SYNC_PROJECT, WORKFLOW_FAILURE: WORKFLOW_FAILURE},
        )
        graph.add_conditional_edges(
            SYNC_PROJECT,
            self._after_sync_route,
            {POD_INSTALL: POD_INSTALL, VALIDATE_BUILD: VALIDATE_BUILD, WORKFLOW_FAILURE: WORKFLOW_FAILURE},
        )
        graph.add_conditional_edges(
            POD_INSTALL,
            self.pod_install_gate.execute,
            {VALIDATE_BUILD: VALIDATE_BUILD, WORKFLOW_FAILURE: WORKFLOW_FAILURE},
        )
        graph.add_conditional_edges(
            VALIDATE_BUILD,
            self.build_router.execute,
            {DEPLOY_APP: DEPLOY_APP, RECOVER_BUILD: RECOVER_BUILD, WORKFLOW_FAILURE: WORKFLOW_FAILURE},
        )
        graph.add_edge(RECOVER_BUILD, VALIDATE_BUILD)
        graph.add_conditional_edges(
            DEPLOY_APP,
            self.deploy_gate.execute,
            {FINISH: FINISH, WORKFLOW_FAILURE: WORKFLOW_FAILURE},
        )
        graph.add_edge(FINISH, END)
        graph.add_edge(WORKFLOW_FAILURE, END)
        return graph

    def _after_sync_route(self, state: AddFeatureState) -> str:
        if self.sync_gate.execute(state) == WORKFLOW_FAILURE:
            return WORKFLOW_FAILURE
        return self.pod_install_router.execute(state)

    # -- nodes ---------------------------------------------------------------

    def _ask(self, node: str, prompt: str, task_input: dict[str, Any]) -> Any:
        model = RESULT_MODELS[node]
        answer = interrupt(
            {
                "nodeId": node,
                "taskPrompt": prompt,
                "taskInput": task_input,
                "resultSchema": model.model_json_schema(by_alias=True),
            }
        )
        return model.model_validate(answer)

    def _validate_project_node(self, state: AddFeatureState) -> dict[str, Any]:
        raw_path = state.get("project_path") or ""
        if not raw_path:
            return {"valid_project": False, "workflow_fatal_error_messages": ["Project path is required but was not provided"]}
        project_path = Path(raw_path)
        if not project_path.exists():
            return {"valid_project": False, "workflow_fatal_error_messages": [f"Project path does not exist: {raw_path}"]}
        if not project_path.is_dir():
            return {"valid_project": False, "workflow_fatal_error_messages": [f"Project path is not a directory: {raw_path}"]}
        try:
            detected = detect_project(project_path)
        except OSError as exc:
            return {"valid_project": False, "workflow_fatal_error_messages": [f"Project at {raw_path} could not be inspected: {exc}"]}
        if detected is None:
            return {
                "valid_project": False,
                "workflow_fatal_error_messages": [
                    f"Project at {raw_path} is not a valid iOS or Android project. "
                    "Expected to find .xcodeproj (iOS) or build.gradle with app module (Android)."
                ],
            }
        platform, project_name = detected
        logger.info("Detected valid %s project %s at %s", platform.value, project_name, raw_path)
        return {"valid_project": True, "platform": platform.value, "project_name": project_name}

    def _fetch_templates_node(self, state: AddFeatureState) -> dict[str, Any]:
        platform = state.get("platform")
        result = self._ask(
            FETCH_TEMPLATES,
            (
                f"List the feature templates available for the {platform} platform from the template catalog. "
                "Return every template name that could implement the requested feature."
            ),
            {"platform": platform, "featureDescription": state.get("feature_description", "")},
        )
        if not result.templates:
            return {
                "available_templates": [],
                "workflow_fatal_error_messages": [f"No feature templates are available for platform {platform}"],
            }
        return {"available_templates": list(result.templates)}

    def _select_template_node(self, state: AddFeatureState) -> dict[str, Any]:
        templates = state.get("available_templates", [])
        result = self._ask(
            SELECT_TEMPLATE,
            (
                "Choose the single feature template that best matches the requested feature.\n\n"
                f"Feature description: {state.get('feature_description', '')}\n\n"
                f"Available templates:\n{_bullets(templates)}"
            ),
            {"templates": templates, "featureDescription": state.get("feature_description", "")},
        )
        return {"selected_template": result.selected_template}

    def _extract_template_properties_node(self, state: AddFeatureState) -> dict[str, Any]:
        template = state.get("selected_template")
        result = self._ask(
            EXTRACT_TEMPLATE_PROPERTIES,
            (
                f"Read the variable definitions of the '{template}' feature template. "
                "Report every variable with its description, whether it is required, and its default value if it has one. "
                "Report an empty object if the template declares no variables."
            ),
            {"template": template, "platform": state.get("platform")},
        )
        metadata = {name: prop.model_dump(mode="json") for name, prop in result.properties.items()}
        defaults = {name: prop.default for name, prop in result.properties.items() if prop.default}
        logger.info("Template %s declares %d variable(s)", template, len(metadata))
        return {"template_properties_metadata": metadata, "template_properties": defaults}

    def _check_app_configuration_node(self, state: AddFeatureState) -> dict[str, Any]:
        metadata = state.get("template_properties_metadata") or {}
        if not metadata:
            return {"template_properties": dict(state.get("template_properties") or {})}
        listing = _bullets(
            [
                f"{name}: {entry.get('description') or 'No description'} "
                f"(required: {'yes' if entry.get('required') else 'no'})"
                for name, entry in metadata.items()
            ]
        )
        result = self._ask(
            CHECK_APP_CONFIGURATION,
            (
                f"The '{state.get('selected_template')}' feature template uses these variables:\n{listing}\n\n"
                f"Inspect the existing {state.get('platform')} app at {state.get('project_path')} "
                "(dependency manifests, plists or manifests, configuration files, sources) and report which variables "
                "are already configured. Only list a variable as already configured if you found it; "
                "everything else needs configuration."
            ),
            {
                "projectPath": state.get("project_path"),
                "platform": state.get("platform"),
                "templatePropertiesMetadata": metadata,
            },
        )
        needed = set(result.needs_configuration)
        return {"template_properties_metadata": {name: entry for name, entry in metadata.items() if name in needed}}

    def _collect_template_properties_node(self, state: AddFeatureState) -> dict[str, Any]:
        metadata = state.get("template_properties_metadata") or {}
        missing = missing_template_properties(metadata, state.get("template_properties"))
        if not missing:
            return {}
        result = self._ask(
            COLLECT_TEMPLATE_PROPERTIES,
            (
                "Ask the user for the following values needed by the feature template, "
                "then pass their answer back verbatim:\n"
                + _bullets([f"{name}: {metadata[name].get('description') or 'No description'}" for name in missing])
            ),
            {"properties": missing},
        )
        return {"template_properties_user_input": result.user_input}

    def _extract_properties_from_input_node(self, state: AddFeatureState) -> dict[str, Any]:
        metadata = state.get("template_properties_metadata") or {}
        user_input = state.get("template_properties_user_input")
        if not metadata or not user_input:
            return {}
        result = self._ask(
            EXTRACT_PROPERTIES_FROM_INPUT,
            (
                "Extract values for these template variables from the user's answer below. "
                "Leave out any variable the answer does not provide.\n"
                f"{_bullets(list(metadata))}\n\nUser answer:\n{user_input}"
            ),
            {"properties": list(metadata), "userInput": user_input},
        )
        collected = dict(state.get("template_properties") or {})
        for name, value in result.properties.items():
            if name in metadata and value.strip():
                collected[name] = value.strip()
        return {"template_properties": collected}

    def _integrate_feature_node(self, state: AddFeatureState) -> dict[str, Any]:
        properties = dict(state.get("template_properties") or {})
        prompt = (
            f"Integrate the '{state.get('selected_template')}' feature template into the "
            f"{state.get('platform')} project {state.get('project_name')} at {state.get('project_path')}. "
            "Apply the template's changes, then report every file you modified and any integration errors."
        )
        if properties:
            prompt += "\n\nTemplate variables:\n" + _bullets([f"{name} = {value}" for name, value in sorted(properties.items())])
        result = self._ask(
            INTEGRATE_FEATURE,
            prompt,
            {
                "projectPath": state.get("project_path"),
                "platform": state.get("platform"),
                "template": state.get("selected_template"),
                "templateProperties": properties,
            },
        )
        files_modified = list(result.files_modified)
        update: dict[str, Any] = {
            "integration_successful": result.integration_successful,
            "files_modified": files_modified,
            "integration_error_messages": list(result.integration_error_messages),
            "podfile_modified": any(Path(name).name == "Podfile" for name in files_modified),
        }
        if not result.integration_successful or result.integration_error_messages:
            update["workflow_fatal_error_messages"] = [
                f"Feature integration failed: {message}" for message in result.integration_error_messages
            ] or ["Feature integration failed without details"]
        return update

    def _sync_project_node(self, state: AddFeatureState) -> dict[str, Any]:
        if state.get("platform") == Platform.IOS.value:
            prompt = (
                f"Add any files created during integration to the Xcode project {state.get('project_name')}.xcodeproj "
                "so they are part of the build target."
            )
        else:
            prompt = "Run a Gradle sync for the project so the integrated feature's modules and dependencies resolve."
        result = self._ask(
            SYNC_PROJECT,
            prompt,
            {"projectPath": state.get("project_path"), "filesModified": state.get("files_modified", [])},
        )
        if not result.sync_successful:
            return {"workflow_fatal_error_messages": [f"Project sync failed: {result.error_message or 'no details'}"]}
        return {}

    def _pod_install_node(self, state: AddFeatureState) -> dict[str, Any]:
        result = self._ask(
            POD_INSTALL,
            f"The Podfile changed. Run `pod install` in {state.get('project_path')} and report the outcome.",
            {"projectPath": state.get("project_path")},
        )
        if not result.success:
            return {"workflow_fatal_error_messages": [f"pod install failed: {result.error_message or 'no details'}"]}
        return {}

    def _validate_build_node(self, state: AddFeatureState) -> dict[str, Any]:
        attempt = state.get("build_attempt_count", 0) + 1
        result = self._ask(
            VALIDATE_BUILD,
            f"Build the {state.get('platform')} project {state.get('project_name')} (attempt {attempt}) and report whether it succeeded.",
            {"projectPath": state.get("project_path"), "attempt": attempt},
        )
        update: dict[str, Any] = {
            "build_attempt_count": attempt,
            "build_successful": result.build_successful,
            "build_output": result.build_output,
        }
        if not result.build_successful and attempt >= self.settings.max_build_attempts:
            update["workflow_fatal_error_messages"] = [f"Build still failing after {attempt} attempt(s)"]
        return update

    def _recover_build_node(self, state: AddFeatureState) -> dict[str, Any]:
        self._ask(
            RECOVER_BUILD,
            (
                "The build failed. Analyze the output below, fix the errors in the project, "
                f"and list the fixes you applied.\n\n{state.get('build_output', '')}"
            ),
            {"projectPath": state.get("project_path"), "buildOutput": state.get("build_output", "")},
        )
        return {"build_successful": False}

    def _deploy_app_node(self, state: AddFeatureState) -> dict[str, Any]:
        result = self._ask(
            DEPLOY_APP,
            f"Deploy {state.get('project_name')} to a {state.get('platform')} simulator or emulator and launch it.",
            {"projectPath": state.get("project_path"), "platform": state.get("platform")},
        )
        if not result.deployed:
            return {"deployed": False, "workflow_fatal_error_messages": [f"Deployment failed: {result.error_message or 'no details'}"]}
        return {"deployed": True}

    def _finish_node(self, state: AddFeatureState) -> dict[str, Any]:
        return {
            "outcome": "completed",
            "summary": (
                f"The '{state.get('selected_template')}' feature was added to {state.get('project_name')} "
                f"({state.get('platform')}). The project is located at {state.get('project_path')}."
            ),
        }

    def _failure_node(self, state: AddFeatureState) -> dict[str, Any]:
        return {"outcome": "failed"}

    # -- turn execution ------------------------------------------------------

    @contextmanager
    def _compiled(self, project_path: Path) -> Iterator[Any]:
        checkpoint_path = self.settings.checkpoint_path(project_path)
        checkpoint_path.parent.mkdir(parents=True, exist_ok=True)
        with closing(sqlite3.connect(checkpoint_path, check_same_thread=False)) as conn:
            yield self._build_graph().compile(checkpointer=SqliteSaver(conn))

    def run_turn(self, request: AddFeatureTurnRequest | Mapping[str, Any]) -> TurnResult:
        """Process one external invocation. Never raises for turn-level problems."""
        if not isinstance(request, AddFeatureTurnRequest):
            raw = request if isinstance(request, Mapping) else {}
            try:
                request = AddFeatureTurnRequest.model_validate(request)
            except ValidationError as exc:
                messages = validation_messages(exc)
                logger.warning("Rejected add-feature turn request: %s", "; ".join(messages))
                return rejected_turn(
                    project_path=str(raw.get("projectPath", "")),
                    feature_id=str(raw.get("featureSlug") or ""),
                    current_state=NOT_STARTED,
                    message="; ".join(messages),
                    next_action="Fix the request fields listed in errors and call the tool again.",
                )

        project_path = Path(request.project_path).expanduser()
        if not project_path.is_dir():
            return rejected_turn(
                project_path=request.project_path,
                feature_id=request.feature_slug or "",
                current_state=NOT_STARTED,
                message=f"Project path does not exist or is not a directory: {request.project_path}",
                next_action="Call the tool again with the absolute path of an existing iOS or Android project.",
            )
        project_path = project_path.resolve()
        try:
            slug = resolve_feature_slug(request.feature_slug, request.feature_description)
        except ValueError as exc:
            return rejected_turn(
                project_path=str(project_path),
                feature_id=request.feature_slug or "",
                current_state=NOT_STARTED,
                message=str(exc),
                next_action="Provide a kebab-case featureSlug or a non-empty featureDescription.",
            )

        store = WorkflowStateStore(self.settings.state_store_path(project_path))
        try:
            with store.locked(WorkflowKind.ADD_FEATURE, slug):
                return self._locked_turn(store, request, project_path, slug)
        except OSError as exc:
            logger.error("Could not lock state for %s: %s", slug, exc)
            return rejected_turn(
                project_path=str(project_path),
                feature_id=slug,
                current_state="unknown",
                message=f"Workflow state could not be locked: {exc}",
                next_action="Fix the file system problem and call the tool again with the same input.",
            )

    def _locked_turn(
        self, store: WorkflowStateStore, request: AddFeatureTurnRequest, project_path: Path, slug: str
    ) -> TurnResult:
        try:
            with self._compiled(project_path) as graph:
                result, context = self._advance(graph, request, project_path, slug)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Add-feature turn failed for %s", slug)
            return rejected_turn(
                project_path=str(project_path),
                feature_id=slug,
                current_state="unknown",
                message=f"Workflow execution error: {exc}",
                next_action="The last completed step is kept in the checkpoint. Fix the problem and call the tool again.",
            )
        if context is not None:
            mirror_error = self._mirror(store, context)
            if mirror_error is not None:
                return result.model_copy(update={"errors": [*result.errors, mirror_error]})
        return result

    def _advance(
        self, graph: Any, request: AddFeatureTurnRequest, project_path: Path, slug: str
    ) -> tuple[TurnResult, WorkflowContext | None]:
        config = {
            "recursion_limit": self.settings.recursion_limit,
            "configurable": {"thread_id": f"add-feature-{slug}"},
        }
        snapshot = graph.get_state(config)

        if not snapshot.values:
            if request.agent_result is not None:
                return self._no_pending_step(project_path, slug, NOT_STARTED, "the workflow has not started yet"), None
            logger.info("Starting add-feature workflow %s in %s", slug, project_path)
            graph.invoke(
                {
                    "project_path": str(project_path),
                    "feature_slug": slug,
                    "feature_description": (request.feature_description or "").strip(),
                    "valid_project": False,
                    "podfile_modified": False,
                    "workflow_fatal_error_messages": [],
                    "build_attempt_count": 0,
                },
                config=config,
            )
        elif not snapshot.next:
            if request.agent_result is not None:
                terminal = self._current_node(snapshot.values, snapshot.next)
                return self._no_pending_step(project_path, slug, terminal, "the workflow has already finished"), None
            logger.debug("Add-feature workflow %s already terminal", slug)
        else:
            pending = next((task for task in snapshot.tasks if task.interrupts), None)
            if pending is None:
                logger.info("Continuing paused add-feature workflow %s at %s", slug, snapshot.next)
                graph.invoke(None, config=config)
            elif request.agent_result is not None:
                model = RESULT_MODELS.get(pending.name)
                if model is None:
                    return self._no_pending_step(project_path, slug, pending.name, f"step {pending.name} takes no result"), None
                try:
                    validated = model.model_validate(request.agent_result)
                except ValidationError as exc:
                    messages = validation_messages(exc)
                    logger.warning("Rejected agent result for %s/%s: %s", slug, pending.name, "; ".join(messages))
                    rejected = self._report(graph.get_state(config), project_path, slug)
                    return rejected.model_copy(
                        update={
                            "success": False,
                            "errors": messages,
                            "next_action": (
                                f"The result for {pending.name} did not match its schema and was not applied.\n\n"
                                f"{rejected.next_action}"
                            ),
                        }
                    ), None
                logger.info("Resuming %s/%s with agent result", slug, pending.name)
                graph.invoke(Command(resume=validated.model_dump(mode="json", by_alias=True)), config=config)
            else:
                logger.debug("No agent result for pending step %s of %s; re-issuing guidance", pending.name, slug)

        final = graph.get_state(config)
        return self._report(final, project_path, slug), self._context_from(final.values, final.next, project_path, slug)

    def _no_pending_step(self, project_path: Path, slug: str, current_state: str, reason: str) -> TurnResult:
        return rejected_turn(
            project_path=str(project_path),
            feature_id=slug,
            current_state=current_state,
            message=f"agentResult was supplied but {reason}",
            next_action="Call the tool without agentResult to get the current step.",
        )

    @staticmethod
    def _current_node(values: Mapping[str, Any], next_nodes: tuple[str, ...]) -> str:
        if next_nodes:
            return next_nodes[0]
        return FINISH if values.get("outcome") == "completed" else WORKFLOW_FAILURE

    def _report(self, snapshot: Any, project_path: Path, slug: str) -> TurnResult:
        values = snapshot.values or {}
        fatal = list(values.get("workflow_fatal_error_messages", []))
        base = {
            "feature_id": slug,
            "project_path": str(project_path),
            "current_state": self._current_node(values, snapshot.next),
        }
        if not snapshot.next:
            if values.get("outcome") == "completed":
                return TurnResult(
                    success=True,
                    next_action=f"{values.get('summary', '')}\n\nThe add-feature workflow is complete.",
                    **base,
                )
            return TurnResult(
                success=True,
                next_action=(
                    "The add-feature workflow failed. Describe these failures to the user; "
                    "they are non-recoverable and should be fixed before starting again:\n"
                    f"{_bullets(fatal)}"
                ),
                errors=fatal,
                **base,
            )
        for task in snapshot.tasks:
            if task.interrupts:
                payload = task.interrupts[0].value
                return TurnResult(
                    success=True,
                    current_state=payload["nodeId"],
                    next_action=(
                        f"{payload['taskPrompt']}\n\n"
                        "When done, call the tool again with agentResult matching resultSchema."
                    ),
                    result_schema=payload["resultSchema"],
                    feature_id=slug,
                    project_path=str(project_path),
                )
        return TurnResult(
            success=True,
            next_action="Call the tool again to continue the workflow.",
            **base,
        )

    def _context_from(
        self, values: Mapping[str, Any], next_nodes: tuple[str, ...], project_path: Path, slug: str
    ) -> WorkflowContext:
        platform = values.get("platform")
        return WorkflowContext(
            workflow=WorkflowKind.ADD_FEATURE,
            feature_id=slug,
            project_path=str(project_path),
            platform=Platform(platform) if platform else None,
            podfile_modified=bool(values.get("podfile_modified", False)),
            valid_project=bool(values.get("valid_project", False)),
            workflow_fatal_error_messages=list(values.get("workflow_fatal_error_messages", [])),
            current_state=self._current_node(values, next_nodes),
        )

    def _mirror(self, store: WorkflowStateStore, context: WorkflowContext) -> str | None:
        """Copy the checkpointed context into the JSON store. Returns an error message on failure."""
        try:
            existing = store.load_or_none(WorkflowKind.ADD_FEATURE, context.feature_id)
            expected = existing.version if existing is not None else 0
            if existing is not None and context.model_copy(update={"version": expected}) == existing:
                return None
            store.save(context, expected_version=expected)
        except (OSError, ValueError, StaleStateError) as exc:
            logger.error("Could not mirror add-feature state for %s: %s", context.feature_id, exc)
            return f"Workflow state record could not be updated: {exc}"
        return None

    def status(self, project_path: Path, feature_slug: str) -> WorkflowContext | None:
        store = WorkflowStateStore(self.settings.state_store_path(project_path.resolve()))
        return store.load_or_none(WorkflowKind.ADD_FEATURE, feature_slug)
