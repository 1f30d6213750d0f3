"""FEEDS_INTO edges built from detected flows, and flat rows for graph storage."""
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone

from .linker import OperatesOnEdge
from .models import FlowEvidence, TerraformToHelmFlow, generate_edge_id

EVIDENCE_POINTER_TYPES = {
    "explicit_reference": "variable_assignment",
    "expression_match": "variable_assignment",
    "env_variable": "variable_assignment",
    "job_dependency": "ci_step",
    "step_proximity": "ci_step",
    "file_path_match": "file_reference",
    "artifact_path": "file_reference",
}

# Tool name -> how to pull its expression out of a snippet
TRANSFORM_TOOLS = {
    "jq": r'jq\s+[\'"]([^\'"]+)[\'"]',
    "yq": r'yq\s+[\'"]([^\'"]+)[\'"]',
    "envsubst": None,
    "sed": r'sed\s+[\'"]([^\'"]+)[\'"]',
    "awk": r'awk\s+[\'"]([^\'"]+)[\'"]',
}

PIPELINE_FILE_MARKERS = [
    (".github/workflows", "github_actions"),
    (".gitlab-ci", "gitlab_ci"),
    ("jenkins", "jenkins"),
    ("azure-pipelines", "azure_devops"),
]


@dataclass(frozen=True)
class EvidencePointer:
    """Where a piece of flow evidence can be found."""
    type: str  # ci_step, script_line, file_reference, variable_assignment
    file_path: str
    strength: float  # 0.0-1.0
    line_start: int | None = None
    line_end: int | None = None
    snippet: str | None = None

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "location": {"filePath": self.file_path, "lineStart": self.line_start, "lineEnd": self.line_end},
            "snippet": self.snippet,
            "strength": self.strength,
        }


@dataclass(frozen=True)
class FeedsIntoEdge:
    """A Terraform output node feeding a Helm value node."""
    id: str
    source_node_id: str
    target_node_id: str
    scan_id: str
    confidence: int
    metadata: dict = field(default_factory=dict)
    evidence: tuple[EvidencePointer, ...] = ()
    type: str = "FEEDS_INTO"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "sourceNodeId": self.source_node_id,
            "targetNodeId": self.target_node_id,
            "scanId": self.scan_id,
            "confidence": self.confidence,
            "metadata": dict(self.metadata),
            "evidence": [e.to_dict() for e in self.evidence],
        }


def _evidence_pointer(evidence: FlowEvidence, default_file: str) -> EvidencePointer:
    location = evidence.location
    return EvidencePointer(
        type=EVIDENCE_POINTER_TYPES.get(evidence.type, "script_line"),
        file_path=location.file if location else default_file,
        line_start=location.line_start if location else None,
        line_end=location.line_end if location else None,
        snippet=evidence.snippet,
        strength=evidence.strength / 100,
    )


def detect_transformation(flow: TerraformToHelmFlow) -> dict | None:
    """First reshaping tool mentioned in the evidence, or direct for inline substitution."""
    for evidence in flow.evidence:
        snippet = evidence.snippet or ""
        lowered = snippet.lower()
        for tool, expression_pattern in TRANSFORM_TOOLS.items():
            if f"{tool} " not in lowered and f"{tool}." not in lowered:
                continue
            transformation = {"type": tool}
            if expression_pattern:
                match = re.search(expression_pattern, snippet)
                if match:
                    transformation["expression"] = match.group(1)
            return transformation

    if flow.pattern == "direct_output":
        return {"type": "direct"}
    return None


def detect_pipeline_type(workflow_file: str) -> str | None:
    lowered = workflow_file.lower()
    for marker, pipeline_type in PIPELINE_FILE_MARKERS:
        if marker in lowered:
            return pipeline_type
    return None


def create_feeds_into_edge(
    flow: TerraformToHelmFlow,
    source_node_id: str,
    target_node_id: str,
    scan_id: str,
    detected_at: str | None = None,
) -> FeedsIntoEdge:
    """FEEDS_INTO edge for a flow between two resolved graph nodes."""
    detected_at = detected_at or datetime.now(timezone.utc).isoformat()
    workflow_file = flow.workflow_context.workflow_file
    return FeedsIntoEdge(
        id=generate_edge_id("FEEDS_INTO", source_node_id, target_node_id),
        source_node_id=source_node_id,
        target_node_id=target_node_id,
        scan_id=scan_id,
        confidence=flow.confidence,
        metadata={
            "sourceType": "terraform_output",
            "sourceOutputName": flow.source.name,
            "sourceModulePath": flow.source.working_dir,
            "targetType": "helmfile_value" if flow.target.source_type == "values_file" else "helm_value",
            "targetValuePath": flow.target.path,
            "targetChart": flow.target.chart or "unknown",
            "flowMechanism": "direct_reference" if flow.pattern == "direct_output" else "ci_pipeline",
            "flowPattern": flow.pattern,
            "pipelineType": detect_pipeline_type(workflow_file),
            "pipelineFile": workflow_file,
            "jobName": flow.source.job_id,
            "transformation": detect_transformation(flow),
            "firstDetected": detected_at,
            "lastVerified": detected_at,
        },
        evidence=tuple(_evidence_pointer(e, workflow_file) for e in flow.evidence),
    )


def operates_on_edge_to_db_format(edge: OperatesOnEdge, scan_id: str, tenant_id: str) -> dict:
    """Flat storage row; confidence rescaled to 0.0-1.0."""
    return {
        "id": edge.id,
        "scan_id": scan_id,
        "tenant_id": tenant_id,
        "original_id": edge.id,
        "source_node_id": edge.source_node_id,
        "target_node_id": edge.target_node_id,
        "type": edge.type,
        "confidence": edge.confidence / 100,
        "metadata": edge.metadata,
    }


def feeds_into_edge_to_db_format(edge: FeedsIntoEdge, tenant_id: str) -> dict:
    """Flat storage row; confidence rescaled to 0.0-1.0."""
    return {
        "id": edge.id,
        "scan_id": edge.scan_id,
        "tenant_id": tenant_id,
        "original_id": edge.id,
        "source_node_id": edge.source_node_id,
        "target_node_id": edge.target_node_id,
        "type": edge.type,
        "confidence": edge.confidence / 100,
        "metadata": dict(edge.metadata),
        "evidence": [e.to_dict() for e in edge.evidence],
    }
