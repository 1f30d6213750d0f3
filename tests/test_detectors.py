"""Tests for the pattern detectors."""
import pytest

from tfxref.detectors import (
    DETECTOR_BASE_CONFIDENCE,
    FILE_RELATEDNESS_KEYWORD_PAIRS,
    _referenced_variables,
    artifact_names_match,
    build_job_chain,
    calculate_detector_confidence,
    collect_env_bindings,
    create_pattern_detectors,
    detect_artifact_transfer,
    detect_direct_output,
    detect_output_to_env,
    detect_output_to_file,
    files_match,
    files_related,
    get_pattern_detector,
    job_depends_on,
)
from tfxref.models import FlowEvidence
from tfxref.orchestrator import build_detection_context


@pytest.fixture
def context():
    """Build a detection context from a jobs mapping."""
    def _build(jobs: dict, **extra):
        return build_detection_context({"jobs": jobs, **extra}, ".github/workflows/deploy.yml")
    return _build


class TestRegistry:
    """Test detector registration and ordering."""

    def test_priority_order(self):
        patterns = [d.pattern for d in create_pattern_detectors()]
        assert patterns == ["direct_output", "output_to_env", "output_to_file", "artifact_transfer"]

    def test_lookup(self):
        assert get_pattern_detector("output_to_env").base_confidence == DETECTOR_BASE_CONFIDENCE["output_to_env"]
        assert get_pattern_detector("job_chain") is None


class TestDetectorConfidence:
    """Test the per-detector score formula."""

    def test_no_evidence_is_base(self):
        assert calculate_detector_confidence(60, []) == 60

    def test_mean_and_count_bonus(self):
        evidence = [
            FlowEvidence(type="env_variable", description="", strength=80),
            FlowEvidence(type="expression_match", description="", strength=80),
        ]
        # 50 + 0.3 * 80 + 2 * 2
        assert calculate_detector_confidence(50, evidence) == 78

    def test_clamped(self):
        evidence = [FlowEvidence(type="explicit_reference", description="", strength=100)] * 8
        assert calculate_detector_confidence(95, evidence) == 100


class TestJobGraph:
    """Test dependency helpers."""

    def test_depends_on_and_chain(self, context):
        ctx = context({
            "infra": {"steps": []},
            "build": {"needs": "infra", "steps": []},
            "deploy": {"needs": ["build"], "steps": []},
        })
        assert job_depends_on(ctx, "build", "infra")
        assert job_depends_on(ctx, "deploy", "infra")
        assert not job_depends_on(ctx, "infra", "deploy")
        assert build_job_chain(ctx, "infra", "deploy") == ("infra", "build", "deploy")
        assert build_job_chain(ctx, "deploy", "deploy") == ("deploy",)
        assert build_job_chain(ctx, "deploy", "infra") == ("deploy", "infra")


class TestDirectOutput:
    """Test inline terraform output substitution."""

    def test_same_job_substitution(self, context):
        ctx = context({"deploy": {"steps": [
            {"run": "terraform apply -auto-approve"},
            {"run": "helm upgrade --install app ./chart --set vpc.id=$(terraform output -raw vpc_id)"},
        ]}})
        flows = detect_direct_output(ctx)

        assert len(flows) == 1
        flow = flows[0]
        assert flow.pattern == "direct_output"
        assert flow.source.name == "vpc_id"
        assert flow.target.path == "vpc.id"
        assert flow.target.source_type == "set_flag"
        assert flow.confidence >= 90
        assert "explicit_reference" in {e.type for e in flow.evidence}

    def test_inline_call_prefers_own_step(self, context):
        """The substitution itself runs terraform, so the Helm step's own job is the source."""
        ctx = context({
            "infra": {"steps": [{"run": "terraform output -raw cluster_name"}]},
            "deploy": {"needs": "infra", "steps": [
                {"run": "helm upgrade app ./chart --set-string cluster=$(terraform output -raw cluster_name)"},
            ]},
        })
        flows = detect_direct_output(ctx)

        assert len(flows) == 1
        assert flows[0].source.job_id == "deploy"
        assert flows[0].target.source_type == "set_string"

    def test_no_substitution_no_flow(self, context):
        ctx = context({"deploy": {"steps": [
            {"run": "terraform apply"},
            {"run": "helm upgrade app ./chart --set replicas=3"},
        ]}})
        assert detect_direct_output(ctx) == []


class TestOutputToEnv:
    """Test environment variable relays."""

    def test_github_env_relay(self, context):
        ctx = context({"deploy": {"steps": [
            {"run": 'echo "DB_HOST=$(terraform output -raw db_host)" >> $GITHUB_ENV'},
            {"run": "helm upgrade db ./chart --set db.host=${DB_HOST}"},
        ]}})
        flows = detect_output_to_env(ctx)

        assert len(flows) == 1
        assert flows[0].source.name == "db_host"
        assert flows[0].target.source_type == "env_substitution"
        assert 60 <= flows[0].confidence <= 90

    def test_cross_job_needs_relay(self, context):
        ctx = context({
            "infra": {
                "outputs": {"cluster_name": "${{ steps.tf.outputs.cluster_name }}"},
                "steps": [{
                    "id": "tf",
                    "run": 'echo "cluster_name=$(terraform output -raw cluster_name)" >> $GITHUB_OUTPUT',
                }],
            },
            "deploy": {
                "needs": "infra",
                "env": {"CLUSTER_NAME": "${{ needs.infra.outputs.cluster_name }}"},
                "steps": [{"run": "helm upgrade app ./chart --set cluster.name=$CLUSTER_NAME"}],
            },
        })
        flows = detect_output_to_env(ctx)

        assert len(flows) == 1
        flow = flows[0]
        assert flow.source.job_id == "infra"
        assert flow.target.job_id == "deploy"
        assert flow.workflow_context.job_chain == ("infra", "deploy")
        assert "job_dependency" in {e.type for e in flow.evidence}
        assert 60 <= flow.confidence <= 90

    def test_export_assignment_binding(self, context):
        ctx = context({"infra": {"steps": [
            {"run": "export VPC_ID=$(terraform output -raw vpc_id)"},
        ]}})
        bindings = collect_env_bindings(ctx)
        assert bindings["VPC_ID"].output_name == "vpc_id"

    def test_denylisted_variables_ignored(self):
        assert _referenced_variables("$GITHUB_SHA-${TAG}") == ["TAG"]
        assert _referenced_variables("${{ env.REGION }}") == ["REGION"]
        assert _referenced_variables("$HOME/$RUNNER_TEMP") == []

    def test_cidr_variable_not_denied(self):
        assert _referenced_variables("$CIDR_BLOCK") == ["CIDR_BLOCK"]


class TestOutputToFile:
    """Test JSON file relays."""

    def test_process_substitution(self, context):
        ctx = context({"deploy": {"steps": [
            {"run": "terraform output -json > tf-outputs.json"},
            {"run": "helm upgrade app ./chart -f <(jq '{vpc: .vpc_id.value}' tf-outputs.json)"},
        ]}})
        flows = detect_output_to_file(ctx)

        assert len(flows) == 1
        assert flows[0].target.path == "vpc"
        assert flows[0].target.source_type == "values_file"
        assert flows[0].source.output_type == "json"

    def test_loosely_related_values_file(self, context):
        ctx = context({
            "infra": {"steps": [{"run": "terraform output -json > tf-output.json"}]},
            "deploy": {"needs": "infra", "steps": [{"run": "helm upgrade app ./chart -f helm-values.yaml"}]},
        })
        flows = detect_output_to_file(ctx)

        assert len(flows) == 1
        assert flows[0].target.path == "values"
        assert flows[0].confidence < 80

    def test_unrelated_values_file(self, context):
        ctx = context({"deploy": {"steps": [
            {"run": "terraform output -json > infra.json"},
            {"run": "helm upgrade app ./chart -f app.yaml"},
        ]}})
        assert detect_output_to_file(ctx) == []


class TestFileRelatedness:
    """Characterize the loose file-name heuristic."""

    def test_keyword_pairs_are_configurable_data(self):
        assert ("tf", "helm") in FILE_RELATEDNESS_KEYWORD_PAIRS

    def test_exact_and_suffix_match(self):
        assert files_match("tf.json", "build/tf.json")
        assert files_match("./out.json", "out.json")
        assert not files_match("a.json", "b.json")

    @pytest.mark.parametrize("a,b", [
        ("./out/tf.json", "out/tf.json"),
        ("outputs.json", "outputs.yaml"),
        ("tf-output.json", "helm-values.yaml"),
        ("outputs.json", "values.yaml"),
        ("terraform.json", "values-prod.yaml"),
    ])
    def test_related(self, a, b):
        assert files_related(a, b)

    @pytest.mark.parametrize("a,b", [
        ("infra.json", "app.yaml"),
        ("network.json", "values.yaml"),
    ])
    def test_unrelated(self, a, b):
        assert not files_related(a, b)


class TestArtifactTransfer:
    """Test CI artifact relays."""

    @pytest.fixture
    def jobs(self):
        return {
            "infra": {"steps": [
                {"run": "terraform output -json > tf-outputs.json"},
                {"uses": "actions/upload-artifact@v4", "with": {"name": "tf-outputs", "path": "tf-outputs.json"}},
            ]},
            "deploy": {"needs": "infra", "steps": [
                {"uses": "actions/download-artifact@v4", "with": {"name": "tf-outputs"}},
                {"run": "helm upgrade app ./chart -f tf-outputs.json"},
            ]},
        }

    def test_upload_download_pair(self, context, jobs):
        flows = detect_artifact_transfer(context(jobs))

        assert len(flows) == 1
        flow = flows[0]
        assert flow.pattern == "artifact_transfer"
        assert flow.source.job_id == "infra"
        assert flow.source.name == "tf-outputs"
        assert flow.target.job_id == "deploy"
        assert 50 <= flow.confidence < 80

    def test_mismatched_artifact_names(self, context, jobs):
        jobs["deploy"]["steps"][0]["with"]["name"] = "docs"
        assert detect_artifact_transfer(context(jobs)) == []

    def test_name_matching(self):
        assert artifact_names_match("tf-outputs", "tf-outputs")
        assert artifact_names_match("terraform-outputs", "outputs")
        assert not artifact_names_match("docs", "coverage")
