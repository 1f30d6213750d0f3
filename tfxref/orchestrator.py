"""Runs the pattern detectors over a workflow and assembles the detection result."""
import hashlib
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone

from .config import DetectorOptions
from .detectors import DetectorSpec, create_pattern_detectors
from .flow_analyzer import find_helm_steps, find_terraform_steps
from .models import (
    CONFIDENCE_LEVELS,
    FLOW_PATTERNS,
    DetectionContext,
    TerraformToHelmFlow,
)
from .scorer import calculate_average_confidence

logger = logging.getLogger(__name__)

DETECTOR_VERSION = "1.0.0"

# Oldest results are evicted past this many cached workflows
MAX_CACHE_ENTRIES = 256

# Top-level GitLab keys that are never jobs
GITLAB_RESERVED_KEYS = {
    "stages",
    "variables",
    "default",
    "include",
    "workflow",
    "image",
    "before_script",
    "after_script",
    "cache",
    "services",
}
GITLAB_JOB_MARKERS = ("script", "stage", "extends", "needs")


@dataclass
class DetectionSummary:
    """Counts over the flows of one detection run."""
    total_flows: int = 0
    flows_by_pattern: dict[str, int] = field(default_factory=lambda: {p: 0 for p in FLOW_PATTERNS})
    flows_by_confidence: dict[str, int] = field(default_factory=lambda: {level: 0 for level in CONFIDENCE_LEVELS})
    average_confidence: int = 0
    terraform_job_count: int = 0
    helm_job_count: int = 0

    def to_dict(self) -> dict:
        return {
            "totalFlows": self.total_flows,
            "flowsByPattern": dict(self.flows_by_pattern),
            "flowsByConfidence": dict(self.flows_by_confidence),
            "averageConfidence": self.average_confidence,
            "terraformJobCount": self.terraform_job_count,
            "helmJobCount": self.helm_job_count,
        }


@dataclass
class DetectionError:
    """A run-level failure."""
    code: str
    message: str
    recoverable: bool = False

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "recoverable": self.recoverable}


@dataclass
class DetectionWarning:
    """An advisory note on a successful run."""
    code: str
    message: str
    flow_id: str | None = None

    def to_dict(self) -> dict:
        data = {"code": self.code, "message": self.message}
        if self.flow_id:
            data["flowId"] = self.flow_id
        return data


@dataclass
class DetectionResult:
    """Flows plus summary, metadata, errors and warnings."""
    flows: list[TerraformToHelmFlow]
    summary: DetectionSummary
    metadata: dict
    errors: list[DetectionError] = field(default_factory=list)
    warnings: list[DetectionWarning] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "flows": [f.to_dict() for f in self.flows],
            "summary": self.summary.to_dict(),
            "metadata": dict(self.metadata),
            "errors": [e.to_dict() for e in self.errors],
            "warnings": [w.to_dict() for w in self.warnings],
        }


def _normalize_needs(value) -> list[str]:
    if isinstance(value, str):
        return [value]
    if not isinstance(value, list):
        return []
    names = []
    for item in value:
        if isinstance(item, str):
            names.append(item)
        elif isinstance(item, dict) and isinstance(item.get("job"), str):
            names.append(item["job"])
    return names


def declared_dependencies(job: dict) -> tuple[str, ...]:
    deps: list[str] = []
    for name in _normalize_needs(job.get("needs")) + _normalize_needs(job.get("dependencies")):
        if name not in deps:
            deps.append(name)
    return tuple(deps)


def extract_jobs(workflow: dict) -> dict[str, dict]:
    """Job map from a GitHub `jobs` table or GitLab top-level job keys."""
    if "jobs" in workflow:
        jobs = workflow["jobs"]
        if not isinstance(jobs, dict):
            return {}
        return {str(k): v for k, v in jobs.items() if isinstance(v, dict)}

    jobs = {}
    for key, value in workflow.items():
        if not isinstance(key, str) or key in GITLAB_RESERVED_KEYS or key.startswith("."):
            continue
        if isinstance(value, dict) and any(marker in value for marker in GITLAB_JOB_MARKERS):
            jobs[key] = value
    return jobs


def build_detection_context(workflow: dict, workflow_file: str = "workflow.yml") -> DetectionContext:
    """Snapshot a workflow for one detection run."""
    if not isinstance(workflow, dict):
        raise ValueError(f"Workflow must be a mapping, got {type(workflow).__name__}")

    jobs = extract_jobs(workflow)
    terraform_steps = []
    helm_steps = []
    dependencies = {}
    for job_id, job in jobs.items():
        terraform_steps.extend(find_terraform_steps(job, job_id))
        helm_steps.extend(find_helm_steps(job, job_id))
        dependencies[job_id] = declared_dependencies(job)

    return DetectionContext(
        workflow=workflow,
        workflow_file=workflow_file,
        jobs=jobs,
        terraform_steps=tuple(terraform_steps),
        helm_steps=tuple(helm_steps),
        job_dependencies=dependencies,
    )


def merge_flows(*flow_lists: list[TerraformToHelmFlow]) -> list[TerraformToHelmFlow]:
    """Concatenate flow lists keeping the first flow per (source job, output, target job, path)."""
    seen = set()
    merged = []
    for flows in flow_lists:
        for flow in flows:
            if flow.dedup_key in seen:
                continue
            seen.add(flow.dedup_key)
            merged.append(flow)
    return merged


def _with_string_keys(value):
    if isinstance(value, dict):
        return {str(k): _with_string_keys(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_with_string_keys(v) for v in value]
    return value


def workflow_fingerprint(workflow: dict, workflow_file: str = "") -> str:
    """Content hash of a workflow, stable across dict ordering."""
    canonical = json.dumps(_with_string_keys(workflow), sort_keys=True, default=str)
    return hashlib.sha256(f"{workflow_file}\n{canonical}".encode("utf-8")).hexdigest()


class TfHelmDetector:
    """Detects Terraform output to Helm value flows in CI workflows.

    Results are memoized per instance by workflow content, keeping at most
    MAX_CACHE_ENTRIES workflows.
    """

    def __init__(self, options: DetectorOptions | None = None):
        self.options = options or DetectorOptions()
        self.detectors: list[DetectorSpec] = create_pattern_detectors()
        self._cache: dict[str, list[TerraformToHelmFlow]] = {}
        # Run summaries surface at INFO when debugging is requested
        self._trace_level = logging.INFO if self.options.debug else logging.DEBUG

    def clear_cache(self) -> None:
        self._cache.clear()

    def detect(self, workflow: dict, workflow_file: str = "workflow.yml") -> list[TerraformToHelmFlow]:
        """Detect flows; context-building failures propagate."""
        if workflow is None:
            raise ValueError("Workflow is required")

        key = workflow_fingerprint(workflow, workflow_file)
        if key in self._cache:
            return list(self._cache[key])

        ctx = build_detection_context(workflow, workflow_file)
        flows = self._detect_in_context(ctx)
        if len(self._cache) >= MAX_CACHE_ENTRIES:
            del self._cache[next(iter(self._cache))]
        self._cache[key] = flows
        return list(flows)

    def _detect_in_context(self, ctx: DetectionContext) -> list[TerraformToHelmFlow]:
        if not ctx.terraform_steps or not ctx.helm_steps:
            logger.log(
                self._trace_level,
                "Skipping %s: %d terraform steps, %d helm steps",
                ctx.workflow_file, len(ctx.terraform_steps), len(ctx.helm_steps),
            )
            return []

        seen = set()
        flows = []
        for detector in self.detectors:
            if not self.options.is_enabled(detector.pattern):
                continue
            if not detector.is_applicable(ctx):
                continue
            try:
                found = detector.detect(ctx)
            except Exception as e:
                logger.debug("Detector %s failed on %s: %s", detector.pattern, ctx.workflow_file, e)
                continue

            for flow in found:
                if flow.dedup_key in seen:
                    continue
                seen.add(flow.dedup_key)
                flows.append(flow)

        flows = [f for f in flows if f.confidence >= self.options.min_confidence]
        flows.sort(key=lambda f: f.confidence, reverse=True)
        flows = flows[: self.options.max_flows]
        logger.log(self._trace_level, "Detected %d flows in %s", len(flows), ctx.workflow_file)
        return flows

    def detect_with_analysis(self, workflow: dict, workflow_file: str = "workflow.yml") -> DetectionResult:
        """Detect flows and attach timing, summary and warnings."""
        started = time.perf_counter()
        errors: list[DetectionError] = []
        warnings: list[DetectionWarning] = []
        flows: list[TerraformToHelmFlow] = []
        ctx = None

        try:
            ctx = build_detection_context(workflow, workflow_file)
            flows = self.detect(workflow, workflow_file)
        except Exception as e:
            logger.debug("Detection failed for %s: %s", workflow_file, e)
            errors.append(DetectionError(code="DETECTION_ERROR", message=str(e), recoverable=False))

        summary = self._summarize(flows, ctx)
        if ctx is not None:
            warnings = self._collect_warnings(flows, ctx)

        return DetectionResult(
            flows=flows,
            summary=summary,
            metadata={
                "detectedAt": datetime.now(timezone.utc).isoformat(),
                "durationMs": round((time.perf_counter() - started) * 1000, 3),
                "detectorVersion": DETECTOR_VERSION,
                "options": self.options.to_dict(),
            },
            errors=errors,
            warnings=warnings,
        )

    def _summarize(self, flows: list[TerraformToHelmFlow], ctx: DetectionContext | None) -> DetectionSummary:
        summary = DetectionSummary(total_flows=len(flows))
        for flow in flows:
            summary.flows_by_pattern[flow.pattern] += 1
            summary.flows_by_confidence[flow.confidence_level] += 1
        summary.average_confidence = calculate_average_confidence(flows)
        if ctx is not None:
            summary.terraform_job_count = len({s.job_id for s in ctx.terraform_steps})
            summary.helm_job_count = len({s.job_id for s in ctx.helm_steps})
        return summary

    def _collect_warnings(
        self, flows: list[TerraformToHelmFlow], ctx: DetectionContext
    ) -> list[DetectionWarning]:
        warnings = []
        if ctx.terraform_steps and not ctx.helm_steps:
            warnings.append(DetectionWarning(
                code="NO_HELM_STEPS",
                message="Workflow runs Terraform but has no Helm steps",
            ))
        if ctx.helm_steps and not ctx.terraform_steps:
            warnings.append(DetectionWarning(
                code="NO_TF_STEPS",
                message="Workflow runs Helm but has no Terraform steps",
            ))

        low = sum(1 for f in flows if f.confidence_level == "low")
        if flows and low > len(flows) / 2:
            warnings.append(DetectionWarning(
                code="MANY_LOW_CONFIDENCE",
                message=f"{low} of {len(flows)} flows have low confidence",
            ))

        for flow in flows:
            if not flow.is_cross_job:
                continue
            if flow.source.job_id not in ctx.dependencies_of(flow.target.job_id):
                warnings.append(DetectionWarning(
                    code="MISSING_JOB_DEPENDENCY",
                    message=(
                        f"Job '{flow.target.job_id}' consumes output '{flow.source.name}' from "
                        f"'{flow.source.job_id}' without declaring a dependency on it"
                    ),
                    flow_id=flow.id,
                ))
        return warnings

    # Queries over a finished run

    def get_flows_above_confidence(self, workflow: dict, threshold: float) -> list[TerraformToHelmFlow]:
        return [f for f in self.detect(workflow) if f.confidence >= threshold]

    def get_flows_by_pattern(self, workflow: dict, pattern: str) -> list[TerraformToHelmFlow]:
        return [f for f in self.detect(workflow) if f.pattern == pattern]

    def get_flows_by_confidence_level(self, workflow: dict, level: str) -> list[TerraformToHelmFlow]:
        return [f for f in self.detect(workflow) if f.confidence_level == level]

    def has_flow_between_jobs(self, workflow: dict, source_job_id: str, target_job_id: str) -> bool:
        return any(
            f.source.job_id == source_job_id and f.target.job_id == target_job_id
            for f in self.detect(workflow)
        )

    def get_source_jobs(self, workflow: dict) -> list[str]:
        jobs = []
        for flow in self.detect(workflow):
            if flow.source.job_id not in jobs:
                jobs.append(flow.source.job_id)
        return jobs

    def get_target_jobs(self, workflow: dict) -> list[str]:
        jobs = []
        for flow in self.detect(workflow):
            if flow.target.job_id not in jobs:
                jobs.append(flow.target.job_id)
        return jobs


def detect_tf_helm_flows(
    workflow: dict,
    workflow_file: str = "workflow.yml",
    options: DetectorOptions | None = None,
) -> list[TerraformToHelmFlow]:
    return TfHelmDetector(options).detect(workflow, workflow_file)


def detect_and_analyze_tf_helm_flows(
    workflow: dict,
    workflow_file: str = "workflow.yml",
    options: DetectorOptions | None = None,
) -> DetectionResult:
    return TfHelmDetector(options).detect_with_analysis(workflow, workflow_file)

