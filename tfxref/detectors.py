"""Pattern detectors for Terraform output to Helm value flows.

Each detector recognizes one concrete way a Terraform output reaches a Helm
command and emits candidate flows with the evidence that supports them. The
detectors are plain records in a priority-ordered registry; the orchestrator
runs them in that order and the first detector to claim a flow wins.
"""
import logging
import re
from collections import deque
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Callable

from .flow_analyzer import extract_terraform_output_names, job_steps
from .models import (
    DetectionContext,
    FlowEvidence,
    HelmStepInfo,
    HelmValueSource,
    SourceLocation,
    TerraformOutputInfo,
    TerraformStepInfo,
    TerraformToHelmFlow,
    WorkflowFlowContext,
    clamp,
    generate_flow_id,
    get_confidence_level,
)

logger = logging.getLogger(__name__)

# Starting points for per-detector confidence
DETECTOR_BASE_CONFIDENCE = {
    "direct_output": 60,
    "output_to_env": 50,
    "output_to_file": 45,
    "artifact_transfer": 35,
}

DETECTOR_PRIORITY = {
    "direct_output": 100,
    "output_to_env": 90,
    "output_to_file": 80,
    "artifact_transfer": 70,
}

_TF_OUTPUT_CALL = (
    r'terraform\s+(?:-chdir=\S+\s+)?output\s+(?:-(?:raw|json|no-color)\s+)*([a-zA-Z_][a-zA-Z0-9_]*)'
)
TF_SUBSTITUTION_PATTERNS = [
    re.compile(rf'\$\(\s*{_TF_OUTPUT_CALL}\s*\)'),
    re.compile(rf'`\s*{_TF_OUTPUT_CALL}\s*`'),
]
INLINE_SET_SUBSTITUTION = re.compile(
    rf'--set(?:-string)?(?:\s+|=)([^=\s]+)=["\']?(\$\(\s*{_TF_OUTPUT_CALL}\s*\))'
)

# Shell assignments capturing a Terraform output
TF_ASSIGNMENT_PATTERNS = [
    re.compile(rf'export\s+([A-Za-z_]\w*)=["\']?(?:\$\(|`)\s*{_TF_OUTPUT_CALL}'),
    re.compile(rf'(?:^|[\s;&(])([A-Za-z_]\w*)=["\']?(?:\$\(|`)\s*{_TF_OUTPUT_CALL}', re.MULTILINE),
]
GITHUB_ENV_WRITE = re.compile(
    r'echo\s+["\']?([A-Za-z_]\w*)=(.*?)["\']?\s*>>\s*["\']?\$\{?GITHUB_ENV\}?'
)
NEEDS_OUTPUT_REFERENCE = re.compile(r'needs\.([\w-]+)\.outputs\.([\w-]+)')
SHELL_VAR_REFERENCE = re.compile(r'\$\{?([A-Za-z_]\w*)\}?')
EXPRESSION_ENV_REFERENCE = re.compile(r'\$\{\{\s*env\.([A-Za-z_]\w*)\s*\}\}')

# Variables that are never application values
ENV_DENYLIST_PREFIXES = ("GITHUB", "HOME", "PATH", "PWD", "USER", "RUNNER_", "CI_")

TF_JSON_FILE_PATTERNS = [
    re.compile(r'terraform\s+(?:-chdir=\S+\s+)?output\s+(?:-[\w-]+\s+)*?-json\b[^|>\n]*?>>?\s*([^\s|;&]+)'),
    re.compile(r'terraform\s+(?:-chdir=\S+\s+)?output\s+(?:-[\w-]+\s+)*?-json\b[^|\n]*\|\s*tee\s+(?:-a\s+)?([^\s|;&]+)'),
]
HELM_PROCESS_SUBSTITUTION = re.compile(
    r'(?:-f|--values)\s+<\(\s*(jq|yq)\s+(?:-\w+\s+)*([\'"])(.*?)\2\s+([^\s)]+)\s*\)'
)
JQ_OBJECT_KEY = re.compile(r'\{\s*"?([A-Za-z_][\w-]*)"?\s*:')
JQ_PATH_KEY = re.compile(r'^\.([A-Za-z_][\w-]*)')

# Tunable keyword pairs used to call two file names related
FILE_RELATEDNESS_KEYWORD_PAIRS = [
    ("terraform", "values"),
    ("tf", "helm"),
    ("output", "values"),
]

TF_ARTIFACT_PATH_PATTERNS = [
    r'terraform.*output',
    r'tf.*output',
    r'\.tfoutput',
    r'outputs?\.json',
]
ARTIFACT_NAME_KEYWORDS = ("terraform", "tf", "output")
SHARED_TF_FILE_MARKERS = ("tf-output", "terraform-output", "outputs.json", ".tfoutput")


@dataclass(frozen=True)
class DetectorSpec:
    """A registered pattern detector."""
    pattern: str
    base_confidence: int
    priority: int
    detect: Callable[[DetectionContext], list[TerraformToHelmFlow]]
    is_applicable: Callable[[DetectionContext], bool]
    description: str = ""


@dataclass(frozen=True)
class EnvBinding:
    """A shell or CI variable that carries a Terraform output."""
    variable: str
    output_name: str
    job_id: str
    step_index: int
    step_id: str | None = None
    working_dir: str | None = None
    snippet: str = ""


@dataclass
class _Upload:
    job_id: str
    step_index: int
    name: str
    paths: list[str] = field(default_factory=list)
    contains_tf_output: bool = False


@dataclass
class _Download:
    job_id: str
    step_index: int
    name: str
    path: str | None = None


def has_terraform_and_helm(ctx: DetectionContext) -> bool:
    return bool(ctx.terraform_steps) and bool(ctx.helm_steps)


def calculate_detector_confidence(base: float, evidence: list[FlowEvidence]) -> int:
    """Detector-local score: base plus mean evidence strength and a count bonus."""
    if evidence:
        mean_strength = sum(e.strength for e in evidence) / len(evidence)
    else:
        mean_strength = 0
    count_bonus = min(10, 2 * len(evidence))
    return round(clamp(base + 0.3 * mean_strength + count_bonus))


def job_depends_on(ctx: DetectionContext, job_id: str, other_job_id: str) -> bool:
    """Check whether job_id declares other_job_id directly or one level removed."""
    deps = ctx.dependencies_of(job_id)
    if other_job_id in deps:
        return True
    return any(other_job_id in ctx.dependencies_of(dep) for dep in deps)


def build_job_chain(ctx: DetectionContext, source_job_id: str, target_job_id: str) -> tuple[str, ...]:
    """Shortest dependency path from the source job to the target job."""
    if source_job_id == target_job_id:
        return (source_job_id,)

    dependents: dict[str, list[str]] = {}
    for job_id, deps in ctx.job_dependencies.items():
        for dep in deps:
            dependents.setdefault(dep, []).append(job_id)

    queue = deque([(source_job_id, (source_job_id,))])
    visited = {source_job_id}
    while queue:
        current, path = queue.popleft()
        for nxt in dependents.get(current, []):
            if nxt == target_job_id:
                return path + (nxt,)
            if nxt not in visited:
                visited.add(nxt)
                queue.append((nxt, path + (nxt,)))

    return (source_job_id, target_job_id)


def _location(ctx: DetectionContext) -> SourceLocation:
    return SourceLocation(file=ctx.workflow_file)


def _build_flow(
    ctx: DetectionContext,
    pattern: str,
    source: TerraformOutputInfo,
    target: HelmValueSource,
    evidence: list[FlowEvidence],
) -> TerraformToHelmFlow:
    confidence = calculate_detector_confidence(DETECTOR_BASE_CONFIDENCE[pattern], evidence)
    return TerraformToHelmFlow(
        id=generate_flow_id(source.job_id, target.job_id, source.name),
        source=source,
        target=target,
        pattern=pattern,
        confidence=confidence,
        confidence_level=get_confidence_level(confidence),
        evidence=tuple(evidence),
        workflow_context=WorkflowFlowContext(
            workflow_file=ctx.workflow_file,
            workflow_name=ctx.workflow_name,
            job_chain=build_job_chain(ctx, source.job_id, target.job_id),
            trigger_type=ctx.trigger_type,
        ),
    )


def _helm_target(ctx: DetectionContext, helm: HelmStepInfo, path: str, source_type: str) -> HelmValueSource:
    return HelmValueSource(
        path=path,
        job_id=helm.job_id,
        step_id=helm.step_id,
        step_index=helm.step_index,
        command=helm.command,
        source_type=source_type,
        release_name=helm.release_name,
        chart=helm.chart,
        namespace=helm.namespace,
        location=_location(ctx),
    )


def _dependency_evidence(source_job: str, target_job: str, strength: float) -> FlowEvidence:
    return FlowEvidence(
        type="job_dependency",
        description=f"Job '{target_job}' declares a dependency on '{source_job}'",
        strength=strength,
        snippet=f"needs: [{source_job}]",
    )


# ---------------------------------------------------------------------------
# Direct substitution: --set key=$(terraform output -raw name)
# ---------------------------------------------------------------------------

def find_terraform_source(
    ctx: DetectionContext, helm: HelmStepInfo, output_name: str
) -> TerraformStepInfo | None:
    """Resolve the step producing an output: same job, then dependencies, then anywhere."""
    same_job = [
        s for s in ctx.terraform_steps
        if s.job_id == helm.job_id and output_name in s.outputs
    ]
    if same_job:
        preceding = [s for s in same_job if s.step_index < helm.step_index]
        if preceding:
            return max(preceding, key=lambda s: s.step_index)
        return min(same_job, key=lambda s: abs(s.step_index - helm.step_index))

    for dep in ctx.dependencies_of(helm.job_id):
        for tf_step in ctx.terraform_steps:
            if tf_step.job_id == dep and output_name in tf_step.outputs:
                return tf_step

    for tf_step in ctx.terraform_steps:
        if output_name in tf_step.outputs or output_name in tf_step.run:
            return tf_step
    return None


def _direct_flow(
    ctx: DetectionContext,
    helm: HelmStepInfo,
    key: str,
    value: str,
    output_name: str,
    expression: str,
    source_type: str,
) -> TerraformToHelmFlow | None:
    tf_step = find_terraform_source(ctx, helm, output_name)
    if tf_step is None:
        return None

    evidence = [
        FlowEvidence(
            type="explicit_reference",
            description=f"Helm value '{key}' is set from terraform output '{output_name}'",
            strength=95,
            location=_location(ctx),
            snippet=f"--set {key}={value}",
        ),
        FlowEvidence(
            type="expression_match",
            description="Command substitution invokes terraform output",
            strength=90,
            snippet=expression,
        ),
    ]
    if tf_step.job_id != helm.job_id:
        if job_depends_on(ctx, helm.job_id, tf_step.job_id):
            evidence.append(_dependency_evidence(tf_step.job_id, helm.job_id, 85))
    else:
        distance = abs(helm.step_index - tf_step.step_index)
        evidence.append(FlowEvidence(
            type="step_proximity",
            description=f"Terraform and Helm steps are {distance} step(s) apart",
            strength=max(50, 90 - 10 * distance),
        ))

    source = TerraformOutputInfo(
        name=output_name,
        job_id=tf_step.job_id,
        step_id=tf_step.step_id,
        step_index=tf_step.step_index,
        command="output",
        working_dir=tf_step.working_dir,
        location=_location(ctx),
    )
    return _build_flow(ctx, "direct_output", source, _helm_target(ctx, helm, key, source_type), evidence)


def detect_direct_output(ctx: DetectionContext) -> list[TerraformToHelmFlow]:
    """Helm --set values filled by inline terraform output substitution."""
    flows = []
    for helm in ctx.helm_steps:
        seen: set[tuple[str, str]] = set()

        for key, value in helm.set_values.items():
            for pattern in TF_SUBSTITUTION_PATTERNS:
                match = pattern.search(value)
                if not match:
                    continue
                output_name = match.group(1)
                if (key, output_name) in seen:
                    continue
                seen.add((key, output_name))
                flow = _direct_flow(
                    ctx, helm, key, value, output_name, match.group(0), helm.source_type_for(key)
                )
                if flow:
                    flows.append(flow)

        # Raw text fallback for --set forms the value parser did not split out
        for match in INLINE_SET_SUBSTITUTION.finditer(helm.run):
            key, expression, output_name = match.group(1), match.group(2), match.group(3)
            if (key, output_name) in seen:
                continue
            seen.add((key, output_name))
            flow = _direct_flow(ctx, helm, key, expression, output_name, expression, "set_flag")
            if flow:
                flows.append(flow)
    return flows


# ---------------------------------------------------------------------------
# Environment relay: VAR=$(terraform output ...) then --set key=$VAR
# ---------------------------------------------------------------------------

def _is_denied_variable(name: str) -> bool:
    return name.upper().startswith(ENV_DENYLIST_PREFIXES)


def collect_env_bindings(ctx: DetectionContext) -> dict[str, EnvBinding]:
    """Map variable names to the Terraform outputs they carry."""
    bindings: dict[str, EnvBinding] = {}

    for tf_step in ctx.terraform_steps:
        for pattern in TF_ASSIGNMENT_PATTERNS:
            for match in pattern.finditer(tf_step.run):
                variable, output_name = match.group(1), match.group(2)
                if variable in bindings:
                    continue
                bindings[variable] = EnvBinding(
                    variable=variable,
                    output_name=output_name,
                    job_id=tf_step.job_id,
                    step_index=tf_step.step_index,
                    step_id=tf_step.step_id,
                    working_dir=tf_step.working_dir,
                    snippet=match.group(0).strip(),
                )

        for match in GITHUB_ENV_WRITE.finditer(tf_step.run):
            variable, value = match.group(1), match.group(2)
            if variable in bindings:
                continue
            names = extract_terraform_output_names(value)
            output_name = names[0] if names else None
            if output_name is None:
                output_name = next((o for o in tf_step.outputs if o in value), None)
            if output_name is None:
                relayed = next(
                    (b for v, b in bindings.items() if re.search(rf'\$\{{?{v}\b', value)),
                    None,
                )
                output_name = relayed.output_name if relayed else None
            if output_name is None:
                continue
            bindings[variable] = EnvBinding(
                variable=variable,
                output_name=output_name,
                job_id=tf_step.job_id,
                step_index=tf_step.step_index,
                step_id=tf_step.step_id,
                working_dir=tf_step.working_dir,
                snippet=match.group(0).strip(),
            )

    # CI env maps on jobs and steps
    for job_id, job in ctx.jobs.items():
        env_maps = []
        if isinstance(job.get("env"), dict):
            env_maps.append((0, None, job["env"]))
        for index, step in enumerate(job_steps(job)):
            if isinstance(step.get("env"), dict):
                env_maps.append((index, step.get("id"), step["env"]))

        for index, step_id, env in env_maps:
            for variable, raw in env.items():
                variable, value = str(variable), str(raw)
                if variable in bindings:
                    continue
                names = extract_terraform_output_names(value)
                if names:
                    bindings[variable] = EnvBinding(
                        variable, names[0], job_id, index, step_id, snippet=f"{variable}: {value}"
                    )
                    continue
                needs_ref = NEEDS_OUTPUT_REFERENCE.search(value)
                if not needs_ref:
                    continue
                producer_job, output_name = needs_ref.group(1), needs_ref.group(2)
                producer = next(
                    (s for s in ctx.terraform_steps
                     if s.job_id == producer_job and output_name in s.outputs),
                    None,
                ) or next((s for s in ctx.terraform_steps if s.job_id == producer_job), None)
                if producer is None:
                    continue
                bindings[variable] = EnvBinding(
                    variable=variable,
                    output_name=output_name,
                    job_id=producer.job_id,
                    step_index=producer.step_index,
                    step_id=producer.step_id,
                    working_dir=producer.working_dir,
                    snippet=f"{variable}: {value}",
                )
    logger.debug("Collected %d env bindings: %s", len(bindings), sorted(bindings))
    return bindings


def _referenced_variables(value: str) -> list[str]:
    names = EXPRESSION_ENV_REFERENCE.findall(value)
    # Drop ${{ }} expressions before looking at plain shell references
    plain = re.sub(r'\$\{\{.*?\}\}', '', value)
    for name in SHELL_VAR_REFERENCE.findall(plain):
        if name not in names:
            names.append(name)
    return [n for n in names if not _is_denied_variable(n)]


def detect_output_to_env(ctx: DetectionContext) -> list[TerraformToHelmFlow]:
    """Terraform outputs relayed to Helm through environment variables."""
    bindings = collect_env_bindings(ctx)
    if not bindings:
        return []

    flows = []
    for helm in ctx.helm_steps:
        for key, value in helm.set_values.items():
            for variable in _referenced_variables(value):
                binding = bindings.get(variable)
                if binding is None:
                    continue
                evidence = [
                    FlowEvidence(
                        type="env_variable",
                        description=f"${variable} carries terraform output '{binding.output_name}'",
                        strength=80,
                        location=_location(ctx),
                        snippet=binding.snippet,
                    ),
                    FlowEvidence(
                        type="expression_match",
                        description=f"Helm value '{key}' references ${variable}",
                        strength=75,
                        snippet=f"--set {key}={value}",
                    ),
                ]
                if binding.job_id != helm.job_id and job_depends_on(ctx, helm.job_id, binding.job_id):
                    evidence.append(_dependency_evidence(binding.job_id, helm.job_id, 70))

                source = TerraformOutputInfo(
                    name=binding.output_name,
                    job_id=binding.job_id,
                    step_id=binding.step_id,
                    step_index=binding.step_index,
                    command="output",
                    working_dir=binding.working_dir,
                    location=_location(ctx),
                )
                target = _helm_target(ctx, helm, key, "env_substitution")
                flows.append(_build_flow(ctx, "output_to_env", source, target, evidence))
                break
    return flows


# ---------------------------------------------------------------------------
# JSON file relay: terraform output -json > f, helm -f <(jq ... f)
# ---------------------------------------------------------------------------

def _normalize_file(path: str) -> str:
    path = path.strip("'\"").replace("\\", "/")
    while path.startswith("./"):
        path = path[2:]
    return path.lower()


def _file_stem(path: str) -> str:
    return PurePosixPath(_normalize_file(path)).stem


def files_match(a: str, b: str) -> bool:
    """Same file, allowing one path to be a suffix of the other."""
    na, nb = _normalize_file(a), _normalize_file(b)
    return na == nb or na.endswith(f"/{nb}") or nb.endswith(f"/{na}")


def files_related(a: str, b: str) -> bool:
    """Loose relatedness between a Terraform output file and a Helm values file."""
    na, nb = _normalize_file(a), _normalize_file(b)
    if na in nb or nb in na:
        return True
    sa, sb = _file_stem(a), _file_stem(b)
    if sa and sb and (sa in sb or sb in sa):
        return True
    for x, y in FILE_RELATEDNESS_KEYWORD_PAIRS:
        if (x in sa and y in sb) or (y in sa and x in sb):
            return True
    return False


def _json_output_files(tf_step: TerraformStepInfo) -> list[str]:
    files = []
    for pattern in TF_JSON_FILE_PATTERNS:
        for match in pattern.finditer(tf_step.run):
            if match.group(1) not in files:
                files.append(match.group(1))
    return files


def _jq_target_path(expression: str) -> str:
    match = JQ_OBJECT_KEY.search(expression) or JQ_PATH_KEY.search(expression.strip())
    return match.group(1) if match else "values"


def detect_output_to_file(ctx: DetectionContext) -> list[TerraformToHelmFlow]:
    """Terraform JSON output written to a file and fed to Helm."""
    producers = [(s, f) for s in ctx.terraform_steps for f in _json_output_files(s)]
    if not producers:
        return []

    flows = []
    for helm in ctx.helm_steps:
        for tf_step, out_file in producers:
            cross_job = tf_step.job_id != helm.job_id
            depends = cross_job and job_depends_on(ctx, helm.job_id, tf_step.job_id)
            source = TerraformOutputInfo(
                name="json_outputs",
                job_id=tf_step.job_id,
                step_id=tf_step.step_id,
                step_index=tf_step.step_index,
                command="output",
                working_dir=tf_step.working_dir,
                output_type="json",
                location=_location(ctx),
            )

            matched = False
            for match in HELM_PROCESS_SUBSTITUTION.finditer(helm.run):
                tool, expression, consumed = match.group(1), match.group(3), match.group(4)
                if not files_match(out_file, consumed):
                    continue
                evidence = [
                    FlowEvidence(
                        type="file_path_match",
                        description=f"Helm reads '{consumed}' written by terraform output -json",
                        strength=85,
                        location=_location(ctx),
                        snippet=match.group(0),
                    ),
                    FlowEvidence(
                        type="expression_match",
                        description=f"Values are extracted with {tool}",
                        strength=80,
                        snippet=f"{tool} '{expression}' {consumed}",
                    ),
                ]
                if depends:
                    evidence.append(_dependency_evidence(tf_step.job_id, helm.job_id, 75))
                target = _helm_target(ctx, helm, _jq_target_path(expression), "values_file")
                flows.append(_build_flow(ctx, "output_to_file", source, target, evidence))
                matched = True

            if matched:
                continue
            for values_file in helm.values_files:
                if not files_related(out_file, values_file):
                    continue
                evidence = [FlowEvidence(
                    type="file_path_match",
                    description=f"Values file '{values_file}' looks related to '{out_file}'",
                    strength=60,
                    snippet=f"-f {values_file}",
                )]
                target = _helm_target(ctx, helm, "values", "values_file")
                flows.append(_build_flow(ctx, "output_to_file", source, target, evidence))
                break
    return flows


# ---------------------------------------------------------------------------
# Artifact relay: upload-artifact in the Terraform job, download in the Helm job
# ---------------------------------------------------------------------------

def _artifact_paths(raw) -> list[str]:
    if not isinstance(raw, str):
        return []
    return [line.strip() for line in raw.splitlines() if line.strip() and not line.strip().startswith("!")]


def _contains_tf_output(paths: list[str], tf_steps: list[TerraformStepInfo]) -> bool:
    for path in paths:
        if any(re.search(p, path, re.IGNORECASE) for p in TF_ARTIFACT_PATH_PATTERNS):
            return True
        if any(path in s.run for s in tf_steps):
            return True
    return False


def _collect_uploads(ctx: DetectionContext) -> list[_Upload]:
    tf_jobs = {s.job_id for s in ctx.terraform_steps}
    uploads = []
    for job_id in tf_jobs:
        job_tf_steps = [s for s in ctx.terraform_steps if s.job_id == job_id]
        for index, step in enumerate(job_steps(ctx.jobs.get(job_id))):
            uses = step.get("uses")
            if not isinstance(uses, str) or "upload-artifact" not in uses:
                continue
            with_args = step.get("with") if isinstance(step.get("with"), dict) else {}
            paths = _artifact_paths(with_args.get("path"))
            uploads.append(_Upload(
                job_id=job_id,
                step_index=index,
                name=str(with_args.get("name") or "artifact"),
                paths=paths,
                contains_tf_output=_contains_tf_output(paths, job_tf_steps),
            ))
    return sorted(uploads, key=lambda u: (list(ctx.jobs).index(u.job_id), u.step_index))


def _collect_downloads(ctx: DetectionContext, job_id: str) -> list[_Download]:
    downloads = []
    for index, step in enumerate(job_steps(ctx.jobs.get(job_id))):
        uses = step.get("uses")
        if not isinstance(uses, str) or "download-artifact" not in uses:
            continue
        with_args = step.get("with") if isinstance(step.get("with"), dict) else {}
        path = with_args.get("path")
        downloads.append(_Download(
            job_id=job_id,
            step_index=index,
            name=str(with_args.get("name") or "artifact"),
            path=path if isinstance(path, str) else None,
        ))
    return downloads


def artifact_names_match(upload_name: str, download_name: str) -> bool:
    """Exact match or the same keyword family."""
    a, b = upload_name.lower(), download_name.lower()
    if a == b or a in b or b in a:
        return True
    return any(k in a and k in b for k in ARTIFACT_NAME_KEYWORDS)


def _meaningful_path(path: str | None) -> bool:
    return bool(path) and path.strip() not in (".", "./", "/")


def helm_uses_artifact(helm: HelmStepInfo, download: _Download, upload: _Upload) -> bool:
    """Check whether a Helm step reads the downloaded artifact."""
    candidates = []
    if _meaningful_path(download.path):
        candidates.append(download.path.strip())
    for path in upload.paths:
        candidates.append(path)
        candidates.append(PurePosixPath(path).name)

    if any(c and c in helm.run for c in candidates):
        return True
    for values_file in helm.values_files:
        if any(c and files_match(values_file, c) for c in candidates):
            return True
    upload_text = " ".join(upload.paths).lower()
    return any(m in helm.run.lower() and m in upload_text for m in SHARED_TF_FILE_MARKERS)


def _upload_output_name(upload: _Upload) -> str:
    if not upload.contains_tf_output:
        return "artifact_data"
    for path in upload.paths:
        stem = PurePosixPath(path).stem
        if stem and stem not in ("*", "**"):
            return stem
    return "outputs"


def detect_artifact_transfer(ctx: DetectionContext) -> list[TerraformToHelmFlow]:
    """Terraform outputs handed to a Helm job through CI artifacts."""
    uploads = _collect_uploads(ctx)
    if not uploads:
        return []
    logger.debug("Found %d artifact uploads in Terraform jobs", len(uploads))

    helm_jobs = []
    for helm in ctx.helm_steps:
        if helm.job_id not in helm_jobs:
            helm_jobs.append(helm.job_id)

    flows = []
    for helm_job in helm_jobs:
        downloads = _collect_downloads(ctx, helm_job)
        for upload in uploads:
            if upload.job_id == helm_job:
                continue
            job_tf_steps = [s for s in ctx.terraform_steps if s.job_id == upload.job_id]
            for download in downloads:
                if not artifact_names_match(upload.name, download.name):
                    continue
                for helm in (h for h in ctx.helm_steps if h.job_id == helm_job):
                    if not helm_uses_artifact(helm, download, upload):
                        continue
                    evidence = [
                        FlowEvidence(
                            type="artifact_path",
                            description=f"Job '{upload.job_id}' uploads artifact '{upload.name}'",
                            strength=75,
                            snippet=", ".join(upload.paths) or upload.name,
                        ),
                        FlowEvidence(
                            type="artifact_path",
                            description=f"Job '{helm_job}' downloads artifact '{download.name}'",
                            strength=75,
                            snippet=download.path or download.name,
                        ),
                    ]
                    if job_depends_on(ctx, helm_job, upload.job_id):
                        evidence.append(_dependency_evidence(upload.job_id, helm_job, 85))
                    if upload.contains_tf_output:
                        evidence.append(FlowEvidence(
                            type="explicit_reference",
                            description="Artifact content is produced by terraform output",
                            strength=80,
                            location=_location(ctx),
                        ))

                    preceding = [s for s in job_tf_steps if s.step_index <= upload.step_index]
                    source = TerraformOutputInfo(
                        name=_upload_output_name(upload),
                        job_id=upload.job_id,
                        step_index=upload.step_index,
                        command=preceding[-1].command if preceding else "output",
                        working_dir=preceding[-1].working_dir if preceding else None,
                        location=_location(ctx),
                    )
                    target_path = download.path.strip() if _meaningful_path(download.path) else "values"
                    target = _helm_target(ctx, helm, target_path, "values_file")
                    flows.append(_build_flow(ctx, "artifact_transfer", source, target, evidence))
    return flows


def _spec(pattern: str, detect, description: str) -> DetectorSpec:
    return DetectorSpec(
        pattern=pattern,
        base_confidence=DETECTOR_BASE_CONFIDENCE[pattern],
        priority=DETECTOR_PRIORITY[pattern],
        detect=detect,
        is_applicable=has_terraform_and_helm,
        description=description,
    )


DETECTOR_REGISTRY = (
    _spec("direct_output", detect_direct_output, "Inline terraform output substitution in --set"),
    _spec("output_to_env", detect_output_to_env, "Terraform output relayed through environment variables"),
    _spec("output_to_file", detect_output_to_file, "Terraform JSON output relayed through a file"),
    _spec("artifact_transfer", detect_artifact_transfer, "Terraform output relayed through CI artifacts"),
)


def create_pattern_detectors() -> list[DetectorSpec]:
    """All detectors, highest priority first."""
    return sorted(DETECTOR_REGISTRY, key=lambda d: d.priority, reverse=True)


def get_pattern_detector(pattern: str) -> DetectorSpec | None:
    return next((d for d in DETECTOR_REGISTRY if d.pattern == pattern), None)
