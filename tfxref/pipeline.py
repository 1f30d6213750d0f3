"""CI pipeline and job nodes with the operations each job performs."""
import re
from dataclasses import dataclass, field

from .flow_analyzer import extract_terraform_output_names, job_steps, resolve_working_dir, step_run_text
from .models import generate_edge_id, short_hash
from .orchestrator import declared_dependencies, extract_jobs

TERRAFORM_PATTERNS = [
    r'terraform\s+(?:-chdir=\S+\s+)?(init|plan|apply|destroy|output|validate|fmt|import|state|workspace|refresh)',
    r'tofu\s+(?:-chdir=\S+\s+)?(init|plan|apply|destroy|output|validate|fmt|import|state|workspace|refresh)',
    r'terragrunt\s+(init|plan|apply|destroy|output|validate|run-all)',
]

HELM_PATTERNS = [
    r'helm\s+(install|upgrade|uninstall|rollback|template|lint|package|push|pull|repo|dependency)',
    r'helmfile\s+(sync|apply|diff|template|destroy|repos)',
]

KUBECTL_PATTERNS = [
    r'kubectl\s+(apply|delete|create|get|describe|logs|exec|rollout|scale|patch)',
]

DOCKER_PATTERNS = [
    r'docker\s+(build|push|pull|run|compose|login|tag)',
    r'docker-compose\s+(up|down|build|push|pull)',
    r'buildah\s+(build|bud|push|pull)',
]

TERRAFORM_ACTIONS = [
    "hashicorp/setup-terraform",
    "hashicorp/terraform-github-actions",
    "dflook/terraform-",
    "gruntwork-io/terragrunt-action",
]

HELM_ACTIONS = [
    "azure/setup-helm",
    "azure/k8s-deploy",
    "deliverybot/helm",
    "helm/chart-releaser-action",
]

OPERATION_PATTERNS = [
    ("terraform", TERRAFORM_PATTERNS, TERRAFORM_ACTIONS),
    ("helm", HELM_PATTERNS, HELM_ACTIONS),
    ("kubectl", KUBECTL_PATTERNS, []),
    ("docker", DOCKER_PATTERNS, []),
]

GITHUB_TRIGGERS = {
    "push": "push",
    "pull_request": "pull_request",
    "pull_request_target": "pull_request",
    "schedule": "schedule",
    "workflow_dispatch": "workflow_dispatch",
    "repository_dispatch": "api",
}


@dataclass(frozen=True)
class PipelineTrigger:
    """What starts a pipeline."""
    type: str
    branches: tuple[str, ...] = ()
    paths: tuple[str, ...] = ()
    tags: tuple[str, ...] = ()
    schedule: str | None = None


@dataclass(frozen=True)
class JobOperation:
    """A typed operation performed by a job step."""
    type: str  # terraform, helm, kubectl, docker, script, other
    command: str
    step_index: int
    text: str = ""
    working_dir: str | None = None
    outputs: tuple[str, ...] = ()

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "command": self.command,
            "stepIndex": self.step_index,
            "text": self.text,
            "workingDir": self.working_dir,
            "outputs": list(self.outputs),
        }


@dataclass(frozen=True)
class JobArtifact:
    name: str
    paths: tuple[str, ...] = ()
    expire_in: str | None = None


@dataclass
class PipelineJobNode:
    """A CI job in the infrastructure graph."""
    id: str
    name: str
    file_path: str
    scan_id: str
    pipeline_id: str
    job_name: str
    stage: str | None = None
    runs_on: str | None = None
    environment: str | None = None
    depends_on: list[str] = field(default_factory=list)
    operations: list[JobOperation] = field(default_factory=list)
    artifacts: list[JobArtifact] = field(default_factory=list)
    outputs: dict[str, str] = field(default_factory=dict)
    type: str = "ci_job"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "name": self.name,
            "filePath": self.file_path,
            "scanId": self.scan_id,
            "metadata": {
                "pipelineId": self.pipeline_id,
                "jobName": self.job_name,
                "stage": self.stage,
                "runsOn": self.runs_on,
                "environment": self.environment,
                "dependsOn": list(self.depends_on),
                "operations": [op.to_dict() for op in self.operations],
                "artifacts": [
                    {"name": a.name, "paths": list(a.paths), "expireIn": a.expire_in}
                    for a in self.artifacts
                ],
                "outputs": dict(self.outputs),
            },
        }


@dataclass
class PipelineNode:
    """A CI pipeline file in the infrastructure graph."""
    id: str
    name: str
    file_path: str
    scan_id: str
    pipeline_type: str  # github_actions, gitlab_ci
    triggers: list[PipelineTrigger] = field(default_factory=list)
    job_count: int = 0
    has_terraform_jobs: bool = False
    has_helm_jobs: bool = False
    type: str = "ci_pipeline"


@dataclass(frozen=True)
class PipelineEdge:
    """PIPELINE_CONTAINS or JOB_DEPENDS_ON."""
    id: str
    type: str
    source_node_id: str
    target_node_id: str
    confidence: int = 100


@dataclass
class PipelineGraph:
    pipeline: PipelineNode
    jobs: list[PipelineJobNode] = field(default_factory=list)
    edges: list[PipelineEdge] = field(default_factory=list)

    def job_by_name(self, name: str) -> PipelineJobNode | None:
        return next((j for j in self.jobs if j.job_name == name), None)


def _normalize_file_path(file_path: str) -> str:
    return file_path.replace("\\", "/").lower()


def generate_pipeline_node_id(file_path: str) -> str:
    return f"pipeline-{short_hash(f'pipeline:{_normalize_file_path(file_path)}')}"


def generate_job_node_id(file_path: str, job_name: str) -> str:
    return f"job-{short_hash(f'job:{_normalize_file_path(file_path)}:{job_name}')}"


def detect_operation_type(step: dict) -> str | None:
    """Classify what a step does, or None for an empty step."""
    run = step.get("run") if isinstance(step.get("run"), str) else ""
    uses = step.get("uses") if isinstance(step.get("uses"), str) else ""

    # The tool invoked first wins, so `helm ... $(terraform output x)` is a helm step
    earliest = None
    for op_type, patterns, actions in OPERATION_PATTERNS:
        for pattern in patterns:
            match = re.search(pattern, run, re.IGNORECASE)
            if match and (earliest is None or match.start() < earliest[0]):
                earliest = (match.start(), op_type)
    if earliest:
        return earliest[1]

    for op_type, _, actions in OPERATION_PATTERNS:
        if any(action in uses for action in actions):
            return op_type

    if run.strip():
        return "script"
    if uses:
        return "other"
    return None


def _operation_command(step: dict, op_type: str) -> str:
    run = step.get("run") if isinstance(step.get("run"), str) else ""
    for candidate, patterns, _ in OPERATION_PATTERNS:
        if candidate != op_type:
            continue
        for pattern in patterns:
            match = re.search(pattern, run, re.IGNORECASE)
            if match:
                return match.group(1).lower()
        return "unknown"
    uses = step.get("uses")
    return uses if isinstance(uses, str) else "script"


def extract_operations(job: dict) -> list[JobOperation]:
    """Typed operations for each step of a job."""
    operations = []
    job = job if isinstance(job, dict) else {}
    for index, step in enumerate(job_steps(job)):
        op_type = detect_operation_type(step)
        if op_type is None:
            continue
        run = step_run_text(step)
        outputs = tuple(extract_terraform_output_names(run)) if op_type == "terraform" else ()
        operations.append(JobOperation(
            type=op_type,
            command=_operation_command(step, op_type),
            step_index=index,
            text=run or str(step.get("uses", "")),
            working_dir=resolve_working_dir(step, job, run),
            outputs=outputs,
        ))
    return operations


def _string_list(value) -> tuple[str, ...]:
    if isinstance(value, str):
        return (value,)
    if isinstance(value, list):
        return tuple(v for v in value if isinstance(v, str))
    return ()


def parse_triggers(workflow: dict, pipeline_type: str) -> list[PipelineTrigger]:
    """Triggers declared by a GitHub `on:` block or GitLab workflow rules."""
    triggers = []
    if pipeline_type == "github_actions":
        on = workflow.get("on", workflow.get(True))
        if isinstance(on, str):
            triggers.append(PipelineTrigger(type=GITHUB_TRIGGERS.get(on, "manual")))
        elif isinstance(on, list):
            for name in _string_list(on):
                triggers.append(PipelineTrigger(type=GITHUB_TRIGGERS.get(name, "manual")))
        elif isinstance(on, dict):
            for name, config in on.items():
                config = config if isinstance(config, dict) else {}
                schedule = None
                if name == "schedule" and isinstance(on[name], list) and on[name]:
                    first = on[name][0]
                    schedule = first.get("cron") if isinstance(first, dict) else None
                triggers.append(PipelineTrigger(
                    type=GITHUB_TRIGGERS.get(str(name), "manual"),
                    branches=_string_list(config.get("branches")),
                    paths=_string_list(config.get("paths")),
                    tags=_string_list(config.get("tags")),
                    schedule=schedule,
                ))
        return triggers

    # GitLab derives triggers from workflow rules
    rules = workflow.get("workflow", {}).get("rules") if isinstance(workflow.get("workflow"), dict) else None
    if isinstance(rules, list):
        conditions = [str(r.get("if", "")) for r in rules if isinstance(r, dict)]
        if any('$CI_PIPELINE_SOURCE == "push"' in c for c in conditions):
            triggers.append(PipelineTrigger(type="push"))
        if any("merge_request" in c for c in conditions):
            triggers.append(PipelineTrigger(type="pull_request"))
        if any("schedule" in c for c in conditions):
            triggers.append(PipelineTrigger(type="schedule"))
    if not triggers:
        triggers.append(PipelineTrigger(type="push"))
    return triggers


def _job_artifacts(job: dict) -> list[JobArtifact]:
    artifacts = []
    raw = job.get("artifacts")
    if isinstance(raw, dict):
        artifacts.append(JobArtifact(
            name=str(raw.get("name") or "default"),
            paths=_string_list(raw.get("paths")),
            expire_in=raw.get("expire_in") if isinstance(raw.get("expire_in"), str) else None,
        ))
    for step in job_steps(job):
        uses = step.get("uses")
        if isinstance(uses, str) and "upload-artifact" in uses:
            with_args = step.get("with") if isinstance(step.get("with"), dict) else {}
            path = with_args.get("path")
            paths = tuple(p.strip() for p in path.splitlines() if p.strip()) if isinstance(path, str) else ()
            artifacts.append(JobArtifact(name=str(with_args.get("name") or "artifact"), paths=paths))
    return artifacts


def _environment_name(job: dict) -> str | None:
    env = job.get("environment")
    if isinstance(env, str):
        return env
    if isinstance(env, dict) and isinstance(env.get("name"), str):
        return env["name"]
    return None


def create_pipeline_nodes(workflow: dict, file_path: str, scan_id: str) -> PipelineGraph:
    """Pipeline node, one node per job, and their containment/dependency edges."""
    if not isinstance(workflow, dict):
        raise ValueError(f"Workflow must be a mapping, got {type(workflow).__name__}")

    pipeline_type = "github_actions" if isinstance(workflow.get("jobs"), dict) else "gitlab_ci"
    pipeline_id = generate_pipeline_node_id(file_path)
    jobs = extract_jobs(workflow)

    graph = PipelineGraph(pipeline=PipelineNode(
        id=pipeline_id,
        name=str(workflow.get("name") or file_path),
        file_path=file_path,
        scan_id=scan_id,
        pipeline_type=pipeline_type,
        triggers=parse_triggers(workflow, pipeline_type),
        job_count=len(jobs),
    ))

    for job_name, job in jobs.items():
        operations = extract_operations(job)
        runs_on = job.get("runs-on", job.get("image"))
        outputs = job.get("outputs")
        node = PipelineJobNode(
            id=generate_job_node_id(file_path, job_name),
            name=str(job.get("name") or job_name),
            file_path=file_path,
            scan_id=scan_id,
            pipeline_id=pipeline_id,
            job_name=job_name,
            stage=job.get("stage") if isinstance(job.get("stage"), str) else None,
            runs_on=runs_on if isinstance(runs_on, str) else None,
            environment=_environment_name(job),
            depends_on=list(declared_dependencies(job)),
            operations=operations,
            artifacts=_job_artifacts(job),
            outputs={str(k): str(v) for k, v in outputs.items()} if isinstance(outputs, dict) else {},
        )
        graph.jobs.append(node)
        graph.edges.append(PipelineEdge(
            id=generate_edge_id("PIPELINE_CONTAINS", pipeline_id, node.id),
            type="PIPELINE_CONTAINS",
            source_node_id=pipeline_id,
            target_node_id=node.id,
        ))
        if any(op.type == "terraform" for op in operations):
            graph.pipeline.has_terraform_jobs = True
        if any(op.type == "helm" for op in operations):
            graph.pipeline.has_helm_jobs = True

    for node in graph.jobs:
        for dep_name in node.depends_on:
            dep = graph.job_by_name(dep_name)
            if dep is None:
                continue
            graph.edges.append(PipelineEdge(
                id=generate_edge_id("JOB_DEPENDS_ON", dep.id, node.id),
                type="JOB_DEPENDS_ON",
                source_node_id=dep.id,
                target_node_id=node.id,
            ))
    return graph


def get_terraform_operations(job: PipelineJobNode) -> list[JobOperation]:
    return [op for op in job.operations if op.type == "terraform"]


def get_helm_operations(job: PipelineJobNode) -> list[JobOperation]:
    return [op for op in job.operations if op.type == "helm"]


def has_infra_operations(job: PipelineJobNode) -> bool:
    return any(op.type in ("terraform", "helm", "kubectl") for op in job.operations)
