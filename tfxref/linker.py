"""Links CI jobs to the Terraform and Helm nodes they operate on."""
import logging
import re
from dataclasses import dataclass, field
from posixpath import dirname

from .config import LinkerOptions
from .flow_analyzer import HELM_NAMESPACE_PATTERN, helm_positionals
from .models import InfraNode, generate_edge_id
from .pipeline import JobOperation, PipelineJobNode

logger = logging.getLogger(__name__)

TERRAFORM_NODE_TYPES = {"terraform_module", "terraform_resource", "terraform_output", "terragrunt_unit"}
HELM_NODE_TYPES = {"helm_release", "helm_chart", "helm_value", "helmfile_release"}

MATCH_REASONS = (
    "working_dir_match",
    "output_reference",
    "release_name_match",
    "chart_name_match",
    "namespace_match",
    "directory_proximity",
    "name_similarity",
)


@dataclass(frozen=True)
class LinkMatch:
    """A candidate node for one job operation."""
    node_id: str
    confidence: float
    reason: str
    operation: JobOperation

    def to_dict(self) -> dict:
        return {
            "nodeId": self.node_id,
            "confidence": self.confidence,
            "matchReason": self.reason,
            "operation": self.operation.command,
            "stepIndex": self.operation.step_index,
        }


@dataclass(frozen=True)
class OperatesOnEdge:
    """A CI job operating on an infrastructure node."""
    id: str
    source_node_id: str
    target_node_id: str
    confidence: int
    operation: str
    operation_type: str
    step_index: int
    match_reason: str
    type: str = "OPERATES_ON"

    @property
    def metadata(self) -> dict:
        return {
            "operation": self.operation,
            "operationType": self.operation_type,
            "stepIndex": self.step_index,
            "matchReason": self.match_reason,
        }

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "sourceNodeId": self.source_node_id,
            "targetNodeId": self.target_node_id,
            "confidence": self.confidence,
            "metadata": self.metadata,
        }


@dataclass
class LinkResult:
    edges: list[OperatesOnEdge] = field(default_factory=list)
    matches: list[LinkMatch] = field(default_factory=list)


# Path and name similarity

def normalize_path(path: str) -> str:
    path = path.replace("\\", "/")
    path = re.sub(r'/+', '/', path)
    while path.startswith("./"):
        path = path[2:]
    return path.rstrip("/").lower()


def get_directory(path: str) -> str:
    return dirname(normalize_path(path))


def are_paths_related(a: str, b: str) -> bool:
    """Same path, same directory, or one inside the other."""
    na, nb = normalize_path(a), normalize_path(b)
    if not na or not nb:
        return False
    if na == nb or na.startswith(nb + "/") or nb.startswith(na + "/"):
        return True
    da, db = get_directory(na), get_directory(nb)
    if da and da == db:
        return True
    return bool(da and db) and (da.startswith(db + "/") or db.startswith(da + "/"))


def calculate_path_similarity(a: str, b: str) -> int:
    """Share of leading path segments in common, 0-100."""
    sa = [s for s in normalize_path(a).split("/") if s]
    sb = [s for s in normalize_path(b).split("/") if s]
    if not sa or not sb:
        return 0
    common = 0
    for x, y in zip(sa, sb):
        if x != y:
            break
        common += 1
    return round(common / max(len(sa), len(sb)) * 100)


def normalize_name(name: str) -> str:
    return re.sub(r'[-_\s]', '', name.lower())


def levenshtein_distance(a: str, b: str) -> int:
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, 1):
        current = [i]
        for j, cb in enumerate(b, 1):
            current.append(min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + (ca != cb),
            ))
        previous = current
    return previous[-1]


def calculate_name_similarity(a: str, b: str) -> int:
    na, nb = normalize_name(a), normalize_name(b)
    if not na or not nb:
        return 0
    if na == nb:
        return 100
    if na in nb or nb in na:
        return 80
    longest = max(len(na), len(nb))
    return round((longest - levenshtein_distance(na, nb)) / longest * 100)


# Operation text helpers

def _positionals(text: str) -> list[str]:
    return helm_positionals(re.sub(r'\\\r?\n\s*', ' ', text))


def extract_release_name(text: str) -> str | None:
    """First positional argument after helm install/upgrade/uninstall/template."""
    positionals = _positionals(text)
    return positionals[0] if positionals else None


def extract_chart_reference(text: str) -> str | None:
    """Positional argument following the release name."""
    positionals = _positionals(text)
    return positionals[1] if len(positionals) > 1 else None


def extract_namespace(text: str) -> str | None:
    match = HELM_NAMESPACE_PATTERN.search(text)
    return match.group(1) if match else None


# Scoring

def _score_name(
    job: PipelineJobNode, operation: JobOperation, node: InfraNode, options: LinkerOptions
) -> int:
    if not options.name_similarity_matching:
        return 0
    # Job names are compared whole, operation text word by word
    tokens = [job.name, job.job_name]
    for candidate in (operation.working_dir or "", operation.text):
        tokens.extend(re.split(r'[\s/]+', candidate))
    best = 0
    for token in tokens:
        if len(token) < 3:
            continue
        best = max(best, calculate_name_similarity(token, node.name))
    return best


def score_terraform_match(
    job: PipelineJobNode, operation: JobOperation, node: InfraNode, options: LinkerOptions
) -> tuple[float, str | None]:
    """Confidence that a Terraform operation acts on a node."""
    confidence = 0.0
    reason = None

    def consider(score: float, why: str) -> None:
        nonlocal confidence, reason
        if score > confidence:
            confidence, reason = score, why

    module_path = node.metadata.get("modulePath") or get_directory(node.file_path)
    if operation.working_dir and module_path:
        similarity = calculate_path_similarity(operation.working_dir, module_path)
        if similarity >= 80:
            consider(similarity, "working_dir_match")
        elif similarity >= 50 and options.fuzzy_path_matching:
            consider(similarity, "directory_proximity")

    if confidence < 50 and are_paths_related(get_directory(job.file_path), get_directory(node.file_path)):
        consider(60, "directory_proximity")

    if operation.outputs and node.type == "terraform_output":
        output_name = normalize_name(node.metadata.get("outputName") or node.name)
        if any(normalize_name(o) == output_name for o in operation.outputs):
            consider(90, "output_reference")

    if confidence < 50 and options.name_similarity_matching:
        similarity = _score_name(job, operation, node, options)
        if similarity >= 60:
            consider(round(similarity * 0.7), "name_similarity")

    return confidence, reason


def score_helm_match(
    job: PipelineJobNode, operation: JobOperation, node: InfraNode, options: LinkerOptions
) -> tuple[float, str | None]:
    """Confidence that a Helm operation acts on a node."""
    confidence = 0.0
    reason = None

    def consider(score: float, why: str) -> None:
        nonlocal confidence, reason
        if score > confidence:
            confidence, reason = score, why

    chart_path = node.metadata.get("chartPath")
    chart_ref = extract_chart_reference(operation.text)
    if chart_path:
        for candidate in (operation.working_dir, chart_ref):
            if candidate and calculate_path_similarity(candidate, chart_path) >= 80:
                consider(80, "chart_name_match")

    release = extract_release_name(operation.text)
    release_name = node.metadata.get("releaseName")
    if release and release_name and normalize_name(release) == normalize_name(release_name):
        consider(95, "release_name_match")

    chart_name = node.metadata.get("chartName")
    if chart_name and chart_ref and (
        chart_name.lower() in chart_ref.lower() or chart_ref.lower().endswith(chart_name.lower())
    ):
        consider(85, "chart_name_match")

    namespace = node.metadata.get("namespace")
    op_namespace = extract_namespace(operation.text) or job.environment
    if namespace and op_namespace and namespace == op_namespace:
        consider(75, "namespace_match")

    if confidence < 50 and are_paths_related(get_directory(job.file_path), get_directory(node.file_path)):
        consider(55, "directory_proximity")

    if confidence < 50 and options.name_similarity_matching:
        similarity = _score_name(job, operation, node, options)
        if similarity >= 60:
            consider(round(similarity * 0.7), "name_similarity")

    return confidence, reason


def _link_operations(
    job: PipelineJobNode,
    operations: list[JobOperation],
    nodes: list[InfraNode],
    scorer,
    options: LinkerOptions,
) -> LinkResult:
    result = LinkResult()
    for operation in operations:
        matches = []
        for node in nodes:
            confidence, reason = scorer(job, operation, node, options)
            if reason is None or confidence < options.min_confidence:
                continue
            matches.append(LinkMatch(node.id, confidence, reason, operation))
        matches.sort(key=lambda m: m.confidence, reverse=True)
        matches = matches[: options.max_edges_per_operation]

        for match in matches:
            result.matches.append(match)
            result.edges.append(OperatesOnEdge(
                id=generate_edge_id("OPERATES_ON", job.id, f"{match.node_id}:{operation.step_index}"),
                source_node_id=job.id,
                target_node_id=match.node_id,
                confidence=round(match.confidence),
                operation=operation.text or operation.command,
                operation_type=operation.type,
                step_index=operation.step_index,
                match_reason=match.reason,
            ))
    return result


def link_job_to_terraform(
    job: PipelineJobNode, nodes: list[InfraNode], options: LinkerOptions | None = None
) -> LinkResult:
    options = options or LinkerOptions()
    operations = [op for op in job.operations if op.type == "terraform"]
    candidates = [n for n in nodes if is_valid_terraform_node(n)]
    return _link_operations(job, operations, candidates, score_terraform_match, options)


def link_job_to_helm(
    job: PipelineJobNode, nodes: list[InfraNode], options: LinkerOptions | None = None
) -> LinkResult:
    options = options or LinkerOptions()
    operations = [op for op in job.operations if op.type == "helm"]
    candidates = [n for n in nodes if is_valid_helm_node(n)]
    return _link_operations(job, operations, candidates, score_helm_match, options)


def link_job_to_infrastructure(
    job: PipelineJobNode,
    terraform_nodes: list[InfraNode],
    helm_nodes: list[InfraNode],
    options: LinkerOptions | None = None,
) -> LinkResult:
    """Link a job's Terraform and Helm operations to known nodes."""
    tf_result = link_job_to_terraform(job, terraform_nodes, options)
    helm_result = link_job_to_helm(job, helm_nodes, options)
    return LinkResult(
        edges=tf_result.edges + helm_result.edges,
        matches=tf_result.matches + helm_result.matches,
    )


def link_all_jobs_to_infrastructure(
    jobs: list[PipelineJobNode],
    terraform_nodes: list[InfraNode],
    helm_nodes: list[InfraNode],
    options: LinkerOptions | None = None,
) -> list[OperatesOnEdge]:
    edges = []
    for job in jobs:
        result = link_job_to_infrastructure(job, terraform_nodes, helm_nodes, options)
        logger.debug("Linked job %s to %d nodes", job.job_name, len(result.edges))
        edges.extend(result.edges)
    return edges


def get_operated_nodes(job_id: str, edges: list[OperatesOnEdge]) -> list[str]:
    nodes = []
    for edge in edges:
        if edge.source_node_id == job_id and edge.target_node_id not in nodes:
            nodes.append(edge.target_node_id)
    return nodes


def get_operating_jobs(node_id: str, edges: list[OperatesOnEdge]) -> list[str]:
    jobs = []
    for edge in edges:
        if edge.target_node_id == node_id and edge.source_node_id not in jobs:
            jobs.append(edge.source_node_id)
    return jobs


def get_linking_stats(edges: list[OperatesOnEdge]) -> dict:
    """Counts and average confidence over a set of edges."""
    by_type: dict[str, int] = {}
    by_reason: dict[str, int] = {}
    for edge in edges:
        by_type[edge.operation_type] = by_type.get(edge.operation_type, 0) + 1
        by_reason[edge.match_reason] = by_reason.get(edge.match_reason, 0) + 1
    return {
        "totalEdges": len(edges),
        "uniqueJobs": len({e.source_node_id for e in edges}),
        "uniqueNodes": len({e.target_node_id for e in edges}),
        "averageConfidence": round(sum(e.confidence for e in edges) / len(edges)) if edges else 0,
        "byOperationType": by_type,
        "byMatchReason": by_reason,
    }


def filter_edges_by_confidence(edges: list[OperatesOnEdge], min_confidence: float) -> list[OperatesOnEdge]:
    return [e for e in edges if e.confidence >= min_confidence]


def filter_edges_by_operation_type(edges: list[OperatesOnEdge], operation_type: str) -> list[OperatesOnEdge]:
    return [e for e in edges if e.operation_type == operation_type]


def is_valid_terraform_node(node: InfraNode) -> bool:
    return node.type in TERRAFORM_NODE_TYPES


def is_valid_helm_node(node: InfraNode) -> bool:
    return node.type in HELM_NODE_TYPES


def is_valid_link_match(match: LinkMatch) -> bool:
    return 0 <= match.confidence <= 100 and match.reason in MATCH_REASONS
