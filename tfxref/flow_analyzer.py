"""Locates Terraform and Helm invocations in CI jobs and traces variables to their origin."""
import enum
import re
from dataclasses import dataclass, field

from .models import (
    HelmStepInfo,
    TerraformStepInfo,
    VariableOrigin,
    VariableTransformation,
)

TERRAFORM_INVOCATION = re.compile(r'\bterraform\s+')
HELM_INVOCATION = re.compile(r'\bhelm\s+')

# Global options that may sit between `terraform` and the subcommand
_TF_GLOBAL_OPTS = r'(?:-chdir=\S+\s+)?'
_TF_OUTPUT_FLAGS = r'(?:-(?:raw|json|no-color|state=\S+)\s+)*'
_TF_NAME = r'([a-zA-Z_][a-zA-Z0-9_]*)'

# Three ways an output name shows up in shell text
TERRAFORM_OUTPUT_PATTERNS = [
    re.compile(rf'terraform\s+{_TF_GLOBAL_OPTS}output\s+{_TF_OUTPUT_FLAGS}{_TF_NAME}'),
    re.compile(rf'\w+=\$\(\s*terraform\s+{_TF_GLOBAL_OPTS}output\s+{_TF_OUTPUT_FLAGS}{_TF_NAME}\s*\)'),
    re.compile(rf'`\s*terraform\s+{_TF_GLOBAL_OPTS}output\s+{_TF_OUTPUT_FLAGS}{_TF_NAME}\s*`'),
]

TERRAFORM_VERBS = ("output", "apply", "plan", "init", "show", "destroy")
HELM_VERBS = ("install", "upgrade", "template", "lint")
HELM_RELEASE_VERBS = ("install", "upgrade", "uninstall", "template")

# A shell word that may embed $(...), ${...}, ${{ ... }}, quotes or backticks
SHELL_WORD = (
    r'(?:\$\([^)]*\)|\$\{\{.*?\}\}|\$\{[^}]*\}|"[^"]*"|\'[^\']*\'|`[^`]*`'
    r'|<\([^)]*\)|[^\s"\'`$<;|&]+|\$|<)+'
)

HELM_SET_PATTERN = re.compile(
    rf'--set(-string|-file)?(?:\s+|=)([^=\s]+)=({SHELL_WORD})'
)
HELM_VALUES_PATTERN = re.compile(rf'(?:^|\s)(?:-f|--values)(?:=|\s+)({SHELL_WORD})')
HELM_NAMESPACE_PATTERN = re.compile(r'(?:^|\s)(?:-n|--namespace)(?:=|\s+)([^\s;|&]+)')
WORKING_DIR_PATTERNS = [
    re.compile(r'-chdir=([^\s;&|]+)'),
    re.compile(r'(?:^|&&|;)\s*cd\s+([^\s;&|]+)', re.MULTILINE),
]

# Helm flags that consume the following word
HELM_VALUE_FLAGS = {
    "--set", "--set-string", "--set-file", "--set-json", "-f", "--values",
    "-n", "--namespace", "--version", "--timeout", "--kube-context",
    "--kubeconfig", "--repo", "-o", "--output", "--description",
    "--post-renderer", "--username", "--password", "--ca-file",
    "--cert-file", "--key-file", "--history-max",
}

# Naming conventions that hint at a Terraform-produced value
TERRAFORM_NAME_PATTERNS = [
    r'^tf_',
    r'_output$',
    r'^terraform_',
    r'cluster_endpoint',
    r'vpc_id',
    r'subnet_ids',
    r'security_group',
    r'arn$',
    r'rds_',
    r'eks_',
]

TERRAFORM_VALUE_HINTS = [
    r'terraform\s+output',
    r'needs\.[\w-]+\.outputs\.',
    r'steps\.[\w-]+\.outputs\.',
]

VARIABLE_REFERENCE = re.compile(r'^(needs|env|steps)\.(?:([\w-]+)\.outputs\.)?([\w-]+)$')


class VariableScope(enum.Enum):
    """Scope a variable reference resolves in."""
    NEEDS = "needs"
    ENV = "env"
    STEPS = "steps"
    OTHER = "other"


@dataclass
class TraceContext:
    """Everything trace_variable may look at."""
    workflow: dict
    job: dict
    steps: list[dict] = field(default_factory=list)
    dependent_jobs: list[str] = field(default_factory=list)
    env_in_scope: dict[str, str] = field(default_factory=dict)
    available_outputs: list[str] = field(default_factory=list)


def job_steps(job) -> list[dict]:
    """Ordered steps of a job; GitLab scripts become synthetic run steps."""
    if not isinstance(job, dict):
        return []
    steps = job.get("steps")
    if isinstance(steps, list):
        return [s for s in steps if isinstance(s, dict)]
    script = job.get("script")
    if isinstance(script, str):
        script = [script]
    if isinstance(script, list):
        return [
            {"run": cmd, "id": f"step-{i}"}
            for i, cmd in enumerate(script)
            if isinstance(cmd, str)
        ]
    return []


def step_run_text(step: dict) -> str:
    """A step's run script with shell line continuations folded."""
    run = step.get("run")
    if not isinstance(run, str):
        return ""
    # Fold shell line continuations
    return re.sub(r'\\\r?\n\s*', ' ', run)


def _string_env(value) -> dict[str, str]:
    if not isinstance(value, dict):
        return {}
    return {str(k): str(v) for k, v in value.items() if v is not None}


def _strip_quotes(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        return value[1:-1]
    return value


def is_terraform_step(step: dict) -> bool:
    """Check whether a step invokes Terraform at all."""
    if not isinstance(step, dict):
        return False
    uses = step.get("uses")
    return "terraform" in step_run_text(step) or (isinstance(uses, str) and "terraform" in uses)


def is_helm_step(step: dict) -> bool:
    """Check whether a step invokes Helm at all."""
    if not isinstance(step, dict):
        return False
    uses = step.get("uses")
    return bool(HELM_INVOCATION.search(step_run_text(step))) or (
        isinstance(uses, str) and "helm" in uses
    )


def extract_terraform_output_names(text: str) -> list[str]:
    """All output names referenced by `terraform output` in a piece of shell."""
    names = []
    for pattern in TERRAFORM_OUTPUT_PATTERNS:
        for match in pattern.finditer(text):
            if match.group(1) not in names:
                names.append(match.group(1))
    return names


def analyze_terraform_command(text: str) -> str:
    """Classify the Terraform verb used in a command."""
    for verb in TERRAFORM_VERBS:
        if re.search(rf'terraform\s+{_TF_GLOBAL_OPTS}{verb}\b', text):
            return verb
    return "other"


def _split_set_pairs(key: str, value: str) -> list[tuple[str, str]]:
    """Split `a=1,b=2` style --set arguments on top-level commas."""
    segments = []
    depth = 0
    quote = None
    current = ""
    for ch in value:
        if quote:
            if ch == quote:
                quote = None
        elif ch in ("'", '"', "`"):
            quote = ch
        elif ch in "({[":
            depth += 1
        elif ch in ")}]":
            depth = max(0, depth - 1)
        elif ch == "," and depth == 0:
            segments.append(current)
            current = ""
            continue
        current += ch
    segments.append(current)

    pairs = [(key, segments[0])]
    for segment in segments[1:]:
        if "=" in segment:
            k, v = segment.split("=", 1)
            pairs.append((k, v))
        else:
            k, v = pairs[-1]
            pairs[-1] = (k, f"{v},{segment}")
    return [(k, _strip_quotes(v)) for k, v in pairs]


def analyze_helm_set_values(text: str) -> tuple[dict[str, str], list[str], list[str]]:
    """Collect --set/--set-string/--set-file pairs in order of appearance."""
    values: dict[str, str] = {}
    string_keys: list[str] = []
    file_keys: list[str] = []
    for match in HELM_SET_PATTERN.finditer(text):
        flavor, key, raw = match.group(1), match.group(2), match.group(3)
        for k, v in _split_set_pairs(key, raw):
            values[k] = v
            if flavor == "-string":
                string_keys.append(k)
            elif flavor == "-file":
                file_keys.append(k)
    return values, string_keys, file_keys


def extract_helm_value_paths(text: str) -> list[str]:
    """Dotted value paths set on the Helm command line."""
    return list(analyze_helm_set_values(text)[0].keys())


def _helm_values_files(text: str) -> list[str]:
    files = []
    for match in HELM_VALUES_PATTERN.finditer(text):
        value = _strip_quotes(match.group(1))
        if value.startswith("-") or value.startswith("<("):
            continue
        if value not in files:
            files.append(value)
    return files


def helm_positionals(text: str, verb: str | None = None) -> list[str]:
    """Positional arguments following `helm <verb>` in the first matching command.

    Without a verb any of install, upgrade, uninstall or template is accepted.
    Flags in HELM_VALUE_FLAGS consume the word after them.
    """
    verbs = verb or "|".join(HELM_RELEASE_VERBS)
    match = re.search(rf'\bhelm\s+(?:{verbs})\b(.*)', text)
    if not match:
        return []
    rest = re.split(r'&&|\|\||;|\n|\|', match.group(1))[0]
    words = re.findall(SHELL_WORD, rest)
    positionals = []
    skip_next = False
    for word in words:
        if skip_next:
            skip_next = False
            continue
        if word.startswith("-"):
            if "=" not in word and word in HELM_VALUE_FLAGS:
                skip_next = True
            continue
        positionals.append(_strip_quotes(word))
    return positionals


def _helm_release_and_chart(text: str, command: str) -> tuple[str | None, str | None]:
    if command not in ("install", "upgrade", "template"):
        return None, None
    positionals = helm_positionals(text, command)
    if not positionals:
        return None, None
    if len(positionals) == 1:
        if command == "template" or "--generate-name" in text:
            return None, positionals[0]
        return positionals[0], None
    return positionals[0], positionals[1]


def resolve_working_dir(step: dict, job: dict, text: str) -> str | None:
    """Step working-directory, then -chdir or a leading cd, then the job's run defaults."""
    working_dir = step.get("working-directory")
    if isinstance(working_dir, str):
        return working_dir
    for pattern in WORKING_DIR_PATTERNS:
        match = pattern.search(text)
        if match:
            return match.group(1)
    defaults = job.get("defaults") if isinstance(job, dict) else None
    if isinstance(defaults, dict):
        run_defaults = defaults.get("run")
        if isinstance(run_defaults, dict) and isinstance(run_defaults.get("working-directory"), str):
            return run_defaults["working-directory"]
    return None


def find_terraform_steps(job: dict, job_id: str) -> list[TerraformStepInfo]:
    """Find steps in a job that run Terraform."""
    found = []
    for index, step in enumerate(job_steps(job)):
        text = step_run_text(step)
        if not TERRAFORM_INVOCATION.search(text):
            continue

        command = analyze_terraform_command(text)
        outputs = tuple(extract_terraform_output_names(text)) if "output" in text else ()
        if not outputs and command == "other":
            continue

        found.append(TerraformStepInfo(
            job_id=job_id,
            step_index=index,
            command=command,
            run=text,
            step_id=step.get("id") if isinstance(step.get("id"), str) else None,
            step_name=step.get("name") if isinstance(step.get("name"), str) else None,
            outputs=outputs,
            working_dir=resolve_working_dir(step, job, text),
            env=_string_env(step.get("env")),
        ))
    return found


def find_helm_steps(job: dict, job_id: str) -> list[HelmStepInfo]:
    """Find steps in a job that run Helm."""
    found = []
    for index, step in enumerate(job_steps(job)):
        text = step_run_text(step)
        if not HELM_INVOCATION.search(text):
            continue

        command = "other"
        for verb in HELM_VERBS:
            if re.search(rf'\bhelm\s+{verb}\b', text):
                command = verb
                break

        set_values, string_keys, file_keys = analyze_helm_set_values(text)
        release, chart = _helm_release_and_chart(text, command)
        namespace = HELM_NAMESPACE_PATTERN.search(text)

        found.append(HelmStepInfo(
            job_id=job_id,
            step_index=index,
            command=command,
            run=text,
            step_id=step.get("id") if isinstance(step.get("id"), str) else None,
            step_name=step.get("name") if isinstance(step.get("name"), str) else None,
            set_values=set_values,
            set_string_keys=tuple(string_keys),
            set_file_keys=tuple(file_keys),
            values_files=tuple(_helm_values_files(text)),
            release_name=release,
            chart=chart,
            namespace=namespace.group(1) if namespace else None,
            working_dir=resolve_working_dir(step, job, text),
            env=_string_env(step.get("env")),
        ))
    return found


def looks_like_terraform_value(value: str) -> bool:
    return any(re.search(p, value) for p in TERRAFORM_VALUE_HINTS)


def parse_variable_reference(reference: str) -> tuple[VariableScope, str, str | None]:
    """Split `needs.job.outputs.x` / `env.X` / `steps.id.outputs.x` into scope, name, owner."""
    reference = reference.strip()
    if reference.startswith("${{") and reference.endswith("}}"):
        reference = reference[3:-2].strip()
    match = VARIABLE_REFERENCE.match(reference)
    if not match:
        return VariableScope.OTHER, reference, None
    return VariableScope(match.group(1)), match.group(3), match.group(2)


def _trace_needs(name: str, owner: str | None, ctx: TraceContext) -> VariableOrigin:
    workflow = ctx.workflow if isinstance(ctx.workflow, dict) else {}
    jobs = workflow.get("jobs")
    # GitLab keeps jobs at the top level
    jobs = jobs if isinstance(jobs, dict) else workflow

    fallback = None
    for dep in ctx.dependent_jobs:
        if owner is not None and dep != owner:
            continue
        tf_steps = find_terraform_steps(jobs.get(dep), dep)
        for tf_step in tf_steps:
            if name in tf_step.outputs or tf_step.command == "output":
                return VariableOrigin(
                    type="terraform_output",
                    source=f"{dep}.{tf_step.step_id or tf_step.step_index}",
                    confidence=85,
                    transformations=(VariableTransformation(
                        type="expression",
                        description=f"needs.{dep}.outputs.{name}",
                    ),),
                )
        if tf_steps and fallback is None:
            fallback = VariableOrigin(type="terraform_output", source=dep, confidence=60)

    if fallback is not None:
        return fallback
    if name in ctx.available_outputs:
        return VariableOrigin(type="job_output", source=name, confidence=75)
    return VariableOrigin(type="unknown", source=name, confidence=0)


def _trace_env(name: str, ctx: TraceContext) -> VariableOrigin:
    job_env = _string_env(ctx.job.get("env")) if isinstance(ctx.job, dict) else {}
    expansion = (VariableTransformation(type="env_expansion", description=f"${name}"),)

    if name in job_env:
        value = job_env[name]
        if looks_like_terraform_value(value):
            return VariableOrigin("terraform_output", value, 80, expansion)
        return VariableOrigin("env_variable", value, 40, expansion)

    if name in ctx.env_in_scope:
        value = ctx.env_in_scope[name]
        if looks_like_terraform_value(value):
            return VariableOrigin("terraform_output", value, 70, expansion)
        return VariableOrigin("env_variable", value, 35, expansion)

    return VariableOrigin(type="unknown", source=name, confidence=0)


def _trace_steps(name: str, owner: str | None, ctx: TraceContext) -> VariableOrigin:
    for index, step in enumerate(ctx.steps):
        if not isinstance(step, dict):
            continue
        step_key = step.get("id") or step.get("name")
        if owner is not None and step_key != owner:
            continue
        if owner is None and name not in extract_terraform_output_names(step_run_text(step)):
            # Without an owner only a step that outputs this exact name counts
            continue
        step_key = step_key or f"step-{index}"
        origin_type = "terraform_output" if is_terraform_step(step) else "step_output"
        return VariableOrigin(
            type=origin_type,
            source=f"{step_key}.{name}",
            confidence=90,
            transformations=(VariableTransformation(
                type="expression",
                description=f"steps.{step_key}.outputs.{name}",
            ),),
        )
    return VariableOrigin(type="unknown", source=name, confidence=0)


def _trace_by_convention(name: str) -> VariableOrigin:
    lowered = name.lower()
    for pattern in TERRAFORM_NAME_PATTERNS:
        if re.search(pattern, lowered):
            return VariableOrigin(
                type="terraform_output",
                source=name,
                confidence=45,
                transformations=(VariableTransformation(
                    type="expression",
                    description=f"naming convention {pattern}",
                ),),
            )
    return VariableOrigin(type="unknown", source=name, confidence=0)


def trace_variable(
    name: str,
    scope: VariableScope | str,
    ctx: TraceContext,
    owner: str | None = None,
) -> VariableOrigin:
    """Trace a variable name back to its most likely origin."""
    if isinstance(scope, str):
        try:
            scope = VariableScope(scope)
        except ValueError:
            scope = VariableScope.OTHER

    if scope is VariableScope.NEEDS:
        return _trace_needs(name, owner, ctx)
    elif scope is VariableScope.ENV:
        return _trace_env(name, ctx)
    elif scope is VariableScope.STEPS:
        return _trace_steps(name, owner, ctx)
    # Naming-convention inference is the fallback for any other scope
    return _trace_by_convention(name)
