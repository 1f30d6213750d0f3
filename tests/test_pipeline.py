"""Tests for pipeline and job node construction."""
import pytest

from tfxref.pipeline import (
    create_pipeline_nodes,
    detect_operation_type,
    extract_operations,
    generate_job_node_id,
    generate_pipeline_node_id,
    get_helm_operations,
    get_terraform_operations,
    has_infra_operations,
    parse_triggers,
)


@pytest.fixture
def github_workflow():
    return {
        "name": "Deploy",
        "on": {
            "push": {"branches": ["main"], "paths": ["infra/**"]},
            "schedule": [{"cron": "0 3 * * *"}],
        },
        "jobs": {
            "infra": {
                "runs-on": "ubuntu-latest",
                "steps": [
                    {"uses": "hashicorp/setup-terraform@v3"},
                    {"run": "terraform apply -auto-approve", "working-directory": "infra"},
                    {"id": "out", "run": "terraform output -raw cluster_name"},
                    {"uses": "actions/upload-artifact@v4", "with": {"name": "tf", "path": "tf.json\nplan.out"}},
                ],
            },
            "deploy": {
                "needs": ["infra"],
                "environment": {"name": "production"},
                "steps": [
                    {"uses": "actions/checkout@v4"},
                    {"run": "helm upgrade app ./charts/app --set c=$(terraform output -raw cluster_name)"},
                    {"run": "kubectl rollout status deploy/app"},
                    {"run": "echo done"},
                ],
            },
        },
    }


class TestOperations:
    """Test step classification."""

    @pytest.mark.parametrize("step,expected", [
        ({"run": "terraform plan"}, "terraform"),
        ({"run": "tofu apply"}, "terraform"),
        ({"run": "terragrunt run-all apply"}, "terraform"),
        ({"run": "helmfile sync"}, "helm"),
        ({"run": "kubectl apply -f k8s/"}, "kubectl"),
        ({"run": "docker build -t app ."}, "docker"),
        ({"run": "make test"}, "script"),
        ({"uses": "azure/setup-helm@v4"}, "helm"),
        ({"uses": "actions/cache@v4"}, "other"),
        ({}, None),
    ])
    def test_detect_operation_type(self, step, expected):
        assert detect_operation_type(step) == expected

    def test_first_tool_wins(self):
        step = {"run": "helm upgrade app ./c --set x=$(terraform output -raw x)"}
        assert detect_operation_type(step) == "helm"

    def test_extract_operations(self):
        job = {"steps": [
            {"run": "terraform output -raw vpc_id", "working-directory": "infra"},
            {},
            {"run": "helm template ./chart"},
        ]}
        operations = extract_operations(job)

        assert [(op.type, op.command, op.step_index) for op in operations] == [
            ("terraform", "output", 0),
            ("helm", "template", 2),
        ]
        assert operations[0].outputs == ("vpc_id",)
        assert operations[0].working_dir == "infra"

    def test_operation_working_dir_sources(self):
        job = {
            "defaults": {"run": {"working-directory": "deploy"}},
            "steps": [
                {"run": "terraform -chdir=infra/network apply"},
                {"run": "cd infra/db && terraform plan"},
                {"run": "helm upgrade app ./chart"},
            ],
        }
        operations = extract_operations(job)

        assert [(op.type, op.command) for op in operations] == [
            ("terraform", "apply"), ("terraform", "plan"), ("helm", "upgrade"),
        ]
        assert [op.working_dir for op in operations] == ["infra/network", "infra/db", "deploy"]


class TestTriggers:
    """Test trigger parsing."""

    def test_github_mapping(self, github_workflow):
        triggers = parse_triggers(github_workflow, "github_actions")

        assert [t.type for t in triggers] == ["push", "schedule"]
        assert triggers[0].branches == ("main",)
        assert triggers[0].paths == ("infra/**",)
        assert triggers[1].schedule == "0 3 * * *"

    def test_github_string_and_list(self):
        assert [t.type for t in parse_triggers({"on": "workflow_dispatch"}, "github_actions")] == ["workflow_dispatch"]
        assert [t.type for t in parse_triggers({True: ["push", "pull_request_target"]}, "github_actions")] == [
            "push", "pull_request",
        ]

    def test_gitlab_rules(self):
        workflow = {"workflow": {"rules": [
            {"if": '$CI_PIPELINE_SOURCE == "merge_request_event"'},
            {"if": '$CI_PIPELINE_SOURCE == "schedule"'},
        ]}}
        assert [t.type for t in parse_triggers(workflow, "gitlab_ci")] == ["pull_request", "schedule"]

    def test_gitlab_default_push(self):
        assert [t.type for t in parse_triggers({}, "gitlab_ci")] == ["push"]


class TestPipelineNodes:
    """Test pipeline graph construction."""

    def test_graph(self, github_workflow):
        graph = create_pipeline_nodes(github_workflow, ".github/workflows/deploy.yml", "scan-1")

        assert graph.pipeline.pipeline_type == "github_actions"
        assert graph.pipeline.job_count == 2
        assert graph.pipeline.has_terraform_jobs
        assert graph.pipeline.has_helm_jobs
        assert [j.job_name for j in graph.jobs] == ["infra", "deploy"]

        deploy = graph.job_by_name("deploy")
        assert deploy.environment == "production"
        assert deploy.depends_on == ["infra"]
        assert [op.type for op in deploy.operations] == ["other", "helm", "kubectl", "script"]

        infra = graph.job_by_name("infra")
        assert infra.runs_on == "ubuntu-latest"
        assert infra.artifacts[0].paths == ("tf.json", "plan.out")

    def test_edges(self, github_workflow):
        graph = create_pipeline_nodes(github_workflow, ".github/workflows/deploy.yml", "scan-1")
        contains = [e for e in graph.edges if e.type == "PIPELINE_CONTAINS"]
        depends = [e for e in graph.edges if e.type == "JOB_DEPENDS_ON"]

        assert len(contains) == 2
        assert all(e.source_node_id == graph.pipeline.id for e in contains)
        assert len(depends) == 1
        assert depends[0].source_node_id == graph.job_by_name("infra").id
        assert depends[0].target_node_id == graph.job_by_name("deploy").id
        assert depends[0].confidence == 100

    def test_gitlab_pipeline(self):
        workflow = {"stages": ["build"], "plan": {"stage": "build", "script": ["terraform plan"]}}
        graph = create_pipeline_nodes(workflow, ".gitlab-ci.yml", "scan-1")

        assert graph.pipeline.pipeline_type == "gitlab_ci"
        assert graph.jobs[0].stage == "build"
        assert get_terraform_operations(graph.jobs[0])[0].command == "plan"
        assert get_helm_operations(graph.jobs[0]) == []
        assert has_infra_operations(graph.jobs[0])

    def test_non_mapping_rejected(self):
        with pytest.raises(ValueError):
            create_pipeline_nodes(["x"], "ci.yml", "scan-1")

    def test_node_ids(self):
        assert generate_pipeline_node_id("A\\B.yml") == generate_pipeline_node_id("a/b.yml")
        assert generate_job_node_id("ci.yml", "build") != generate_job_node_id("ci.yml", "deploy")
        assert generate_job_node_id("ci.yml", "build").startswith("job-")

    def test_job_node_to_dict(self, github_workflow):
        graph = create_pipeline_nodes(github_workflow, "ci.yml", "scan-1")
        data = graph.job_by_name("deploy").to_dict()

        assert data["type"] == "ci_job"
        assert data["metadata"]["dependsOn"] == ["infra"]
        assert data["metadata"]["operations"][1]["type"] == "helm"
