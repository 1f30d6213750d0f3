"""Core records and score tables for Terraform to Helm cross-reference detection."""
import hashlib
from dataclasses import dataclass, field
from typing import Any

# Fixed pattern vocabulary for flows
FLOW_PATTERNS = (
    "direct_output",
    "output_to_env",
    "output_to_file",
    "output_to_secret",
    "job_chain",
    "artifact_transfer",
    "matrix_propagation",
    "inferred",
)

EVIDENCE_TYPES = (
    "explicit_reference",
    "expression_match",
    "job_dependency",
    "env_variable",
    "file_path_match",
    "artifact_path",
    "naming_convention",
    "semantic_match",
    "step_proximity",
)

CONFIDENCE_LEVELS = ("high", "medium", "low")

TERRAFORM_COMMANDS = ("output", "apply", "plan", "init", "show", "destroy", "other")
HELM_COMMANDS = ("install", "upgrade", "template", "lint", "other")
HELM_SOURCE_TYPES = ("set_flag", "set_string", "set_file", "env_substitution", "values_file")
OPERATION_TYPES = ("terraform", "helm", "kubectl", "docker", "script", "other")

ORIGIN_TYPES = (
    "terraform_output",
    "job_output",
    "step_output",
    "env_variable",
    "secret",
    "input",
    "artifact",
    "unknown",
)

HIGH_CONFIDENCE_THRESHOLD = 80
MEDIUM_CONFIDENCE_THRESHOLD = 50


def clamp(value: float, low: float = 0, high: float = 100) -> float:
    return max(low, min(high, value))


def get_confidence_level(score: float) -> str:
    """Map a 0-100 score onto high/medium/low."""
    if score >= HIGH_CONFIDENCE_THRESHOLD:
        return "high"
    elif score >= MEDIUM_CONFIDENCE_THRESHOLD:
        return "medium"
    return "low"


def short_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:16]


def generate_edge_id(edge_type: str, source_id: str, target_id: str) -> str:
    """Deterministic, direction-sensitive id for a typed edge."""
    prefix = edge_type.lower().replace("_", "-")
    return f"{prefix}-{short_hash(f'{edge_type}:{source_id}:{target_id}')}"


def generate_flow_id(source_job_id: str, target_job_id: str, output_name: str) -> str:
    """Deterministic id for a Terraform to Helm flow."""
    return f"tf-helm-{short_hash(f'TF_HELM_FLOW:{source_job_id}:{target_job_id}:{output_name}')}"


@dataclass(frozen=True)
class SourceLocation:
    """Position of a construct inside a workflow file."""
    file: str
    line_start: int = 1
    line_end: int = 1
    column_start: int | None = None
    column_end: int | None = None

    def to_dict(self) -> dict:
        data = {"file": self.file, "lineStart": self.line_start, "lineEnd": self.line_end}
        if self.column_start is not None:
            data["columnStart"] = self.column_start
        if self.column_end is not None:
            data["columnEnd"] = self.column_end
        return data


@dataclass(frozen=True)
class TerraformOutputInfo:
    """A Terraform output observed in a CI step."""
    name: str
    job_id: str
    step_index: int
    command: str  # output, apply, plan, show ...
    step_id: str | None = None
    working_dir: str | None = None
    sensitive: bool = False
    output_type: str | None = None
    location: SourceLocation | None = None

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "jobId": self.job_id,
            "stepId": self.step_id,
            "stepIndex": self.step_index,
            "command": self.command,
            "workingDir": self.working_dir,
            "sensitive": self.sensitive,
            "outputType": self.output_type,
            "location": self.location.to_dict() if self.location else None,
        }


@dataclass(frozen=True)
class HelmValueSource:
    """A Helm value path fed from somewhere in a CI step."""
    path: str
    job_id: str
    step_index: int
    command: str  # install, upgrade, template, lint
    source_type: str  # set_flag, set_string, set_file, env_substitution, values_file
    step_id: str | None = None
    release_name: str | None = None
    chart: str | None = None
    namespace: str | None = None
    location: SourceLocation | None = None

    def to_dict(self) -> dict:
        return {
            "path": self.path,
            "jobId": self.job_id,
            "stepId": self.step_id,
            "stepIndex": self.step_index,
            "command": self.command,
            "sourceType": self.source_type,
            "releaseName": self.release_name,
            "chart": self.chart,
            "namespace": self.namespace,
            "location": self.location.to_dict() if self.location else None,
        }


@dataclass(frozen=True)
class FlowEvidence:
    """One typed observation supporting a flow."""
    type: str
    description: str
    strength: float  # 0-100
    location: SourceLocation | None = None
    snippet: str | None = None

    def __post_init__(self):
        if self.type not in EVIDENCE_TYPES:
            raise ValueError(f"Unknown evidence type: {self.type}")
        if not 0 <= self.strength <= 100:
            raise ValueError(f"Evidence strength out of range: {self.strength}")

    def to_dict(self) -> dict:
        data = {"type": self.type, "description": self.description, "strength": self.strength}
        if self.location:
            data["location"] = self.location.to_dict()
        if self.snippet is not None:
            data["snippet"] = self.snippet
        return data


@dataclass(frozen=True)
class WorkflowFlowContext:
    """Where in the pipeline a flow happens."""
    workflow_file: str
    job_chain: tuple[str, ...]
    workflow_name: str = "unnamed-workflow"
    same_workflow: bool = True
    trigger_type: str | None = None

    def to_dict(self) -> dict:
        return {
            "workflowFile": self.workflow_file,
            "workflowName": self.workflow_name,
            "jobChain": list(self.job_chain),
            "sameWorkflow": self.same_workflow,
            "triggerType": self.trigger_type,
        }


@dataclass(frozen=True)
class TerraformToHelmFlow:
    """A hypothesized data dependency from a Terraform output to a Helm value."""
    id: str
    source: TerraformOutputInfo
    target: HelmValueSource
    pattern: str
    confidence: int
    confidence_level: str
    evidence: tuple[FlowEvidence, ...]
    workflow_context: WorkflowFlowContext

    def __post_init__(self):
        if self.pattern not in FLOW_PATTERNS:
            raise ValueError(f"Unknown flow pattern: {self.pattern}")
        if not 0 <= self.confidence <= 100:
            raise ValueError(f"Flow confidence out of range: {self.confidence}")

    @property
    def dedup_key(self) -> tuple[str, str, str, str]:
        return (self.source.job_id, self.source.name, self.target.job_id, self.target.path)

    @property
    def is_cross_job(self) -> bool:
        return self.source.job_id != self.target.job_id

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "source": self.source.to_dict(),
            "target": self.target.to_dict(),
            "pattern": self.pattern,
            "confidence": self.confidence,
            "confidenceLevel": self.confidence_level,
            "evidence": [e.to_dict() for e in self.evidence],
            "workflowContext": self.workflow_context.to_dict(),
        }


@dataclass(frozen=True)
class VariableTransformation:
    """A transformation applied to a value between origin and use."""
    type: str  # expression, env_expansion, file_read, json_parse
    description: str


@dataclass(frozen=True)
class VariableOrigin:
    """Where a traced variable most likely came from."""
    type: str
    source: str
    confidence: int
    transformations: tuple[VariableTransformation, ...] = ()

    def __post_init__(self):
        if self.type not in ORIGIN_TYPES:
            raise ValueError(f"Unknown origin type: {self.type}")


@dataclass(frozen=True)
class TerraformStepInfo:
    """Terraform invocation found in a job step."""
    job_id: str
    step_index: int
    command: str
    run: str
    step_id: str | None = None
    step_name: str | None = None
    outputs: tuple[str, ...] = ()
    working_dir: str | None = None
    env: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class HelmStepInfo:
    """Helm invocation found in a job step."""
    job_id: str
    step_index: int
    command: str
    run: str
    step_id: str | None = None
    step_name: str | None = None
    set_values: dict[str, str] = field(default_factory=dict)
    set_string_keys: tuple[str, ...] = ()
    set_file_keys: tuple[str, ...] = ()
    values_files: tuple[str, ...] = ()
    release_name: str | None = None
    chart: str | None = None
    namespace: str | None = None
    working_dir: str | None = None
    env: dict[str, str] = field(default_factory=dict)

    def source_type_for(self, key: str) -> str:
        """Helm value source mechanism for a --set key."""
        if key in self.set_string_keys:
            return "set_string"
        if key in self.set_file_keys:
            return "set_file"
        return "set_flag"


@dataclass(frozen=True)
class DetectionContext:
    """Immutable per-run snapshot of a workflow."""
    workflow: dict
    workflow_file: str
    jobs: dict[str, dict]
    terraform_steps: tuple[TerraformStepInfo, ...]
    helm_steps: tuple[HelmStepInfo, ...]
    job_dependencies: dict[str, tuple[str, ...]]

    @property
    def workflow_name(self) -> str:
        name = self.workflow.get("name")
        return name if isinstance(name, str) and name else "unnamed-workflow"

    @property
    def trigger_type(self) -> str | None:
        on = self.workflow.get("on", self.workflow.get(True))
        if isinstance(on, str):
            return on
        if isinstance(on, list) and on:
            return str(on[0])
        if isinstance(on, dict) and on:
            return str(next(iter(on)))
        return None

    def dependencies_of(self, job_id: str) -> tuple[str, ...]:
        return self.job_dependencies.get(job_id, ())


@dataclass(frozen=True)
class InfraNode:
    """A Terraform or Helm graph node as seen by the job linker."""
    id: str
    type: str
    name: str
    file_path: str
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "name": self.name,
            "filePath": self.file_path,
            "metadata": dict(self.metadata),
        }
