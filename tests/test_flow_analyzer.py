"""Tests for step discovery and variable tracing."""
import pytest

from tfxref.flow_analyzer import (
    TraceContext,
    VariableScope,
    analyze_helm_set_values,
    analyze_terraform_command,
    extract_terraform_output_names,
    find_helm_steps,
    find_terraform_steps,
    job_steps,
    parse_variable_reference,
    trace_variable,
)


class TestTerraformSteps:
    """Test Terraform step discovery."""

    def test_finds_steps_and_outputs(self):
        job = {"steps": [
            {"uses": "actions/checkout@v4"},
            {"run": "terraform init"},
            {"run": "terraform apply -auto-approve"},
            {"id": "out", "run": 'echo "vpc=$(terraform output -raw vpc_id)" >> $GITHUB_OUTPUT'},
        ]}
        steps = find_terraform_steps(job, "infra")

        assert [s.step_index for s in steps] == [1, 2, 3]
        assert [s.command for s in steps] == ["init", "apply", "output"]
        assert steps[2].outputs == ("vpc_id",)
        assert steps[2].step_id == "out"

    def test_output_name_syntaxes(self):
        text = (
            "terraform output -raw cluster_name\n"
            "ENDPOINT=$(terraform output -raw endpoint)\n"
            "ARN=`terraform output role_arn`\n"
            "terraform output -raw cluster_name"
        )
        assert extract_terraform_output_names(text) == ["cluster_name", "endpoint", "role_arn"]

    def test_json_output_has_no_names(self):
        job = {"steps": [{"run": "terraform -chdir=infra output -json > tf.json"}]}
        steps = find_terraform_steps(job, "infra")

        assert len(steps) == 1
        assert steps[0].command == "output"
        assert steps[0].outputs == ()
        assert steps[0].working_dir == "infra"

    def test_working_directory(self):
        job = {"steps": [
            {"run": "terraform plan", "working-directory": "infra/network"},
            {"run": "cd infra/db && terraform apply"},
        ]}
        steps = find_terraform_steps(job, "infra")
        assert [s.working_dir for s in steps] == ["infra/network", "infra/db"]

    def test_job_default_working_directory(self):
        job = {"defaults": {"run": {"working-directory": "stack"}}, "steps": [{"run": "terraform init"}]}
        assert find_terraform_steps(job, "infra")[0].working_dir == "stack"

    def test_unrecognized_verb_without_outputs_skipped(self):
        job = {"steps": [{"run": "terraform fmt -check"}]}
        assert find_terraform_steps(job, "lint") == []

    @pytest.mark.parametrize("job", [{}, {"steps": None}, {"steps": "nope"}, "not-a-job"])
    def test_malformed_steps(self, job):
        assert find_terraform_steps(job, "x") == []

    def test_command_kind(self):
        assert analyze_terraform_command("terraform destroy -auto-approve") == "destroy"
        assert analyze_terraform_command("terraform -chdir=a show") == "show"
        assert analyze_terraform_command("terraform validate") == "other"


class TestHelmSteps:
    """Test Helm step discovery."""

    def test_full_upgrade_command(self):
        job = {"steps": [{"run": (
            "helm upgrade --install my-release ./charts/api --namespace prod "
            '--set image.tag=v1 --set-string replicas="3" -f values.yaml'
        )}]}
        step = find_helm_steps(job, "deploy")[0]

        assert step.command == "upgrade"
        assert step.release_name == "my-release"
        assert step.chart == "./charts/api"
        assert step.namespace == "prod"
        assert step.set_values == {"image.tag": "v1", "replicas": "3"}
        assert step.set_string_keys == ("replicas",)
        assert step.values_files == ("values.yaml",)

    def test_flag_order_independent(self):
        job = {"steps": [{"run": "helm install -n staging --set a=1 web bitnami/nginx"}]}
        step = find_helm_steps(job, "deploy")[0]
        assert step.release_name == "web"
        assert step.chart == "bitnami/nginx"
        assert step.namespace == "staging"

    def test_line_continuations(self):
        job = {"steps": [{"run": "helm upgrade app ./chart \\\n  --set host=example.com \\\n  --set port=443"}]}
        step = find_helm_steps(job, "deploy")[0]
        assert step.set_values == {"host": "example.com", "port": "443"}

    def test_substitution_values_kept_whole(self):
        values, _, _ = analyze_helm_set_values(
            "helm upgrade app ./c --set vpc=$(terraform output -raw vpc_id) "
            "--set env=${{ needs.infra.outputs.env }} --set db=${DB_HOST}"
        )
        assert values == {
            "vpc": "$(terraform output -raw vpc_id)",
            "env": "${{ needs.infra.outputs.env }}",
            "db": "${DB_HOST}",
        }

    def test_comma_separated_pairs(self):
        values, _, _ = analyze_helm_set_values("helm install x ./c --set a=1,b=2")
        assert values == {"a": "1", "b": "2"}

    def test_values_file_forms(self):
        job = {"steps": [{"run": "helm upgrade app ./c --values=prod.yaml -f - -f <(cat x) -f extra.yaml"}]}
        step = find_helm_steps(job, "deploy")[0]
        assert step.values_files == ("prod.yaml", "extra.yaml")

    def test_set_file(self):
        _, _, file_keys = analyze_helm_set_values("helm upgrade app ./c --set-file ca=ca.pem")
        assert file_keys == ["ca"]

    def test_gitlab_script(self):
        job = {"script": ["terraform init", 3, "helm lint ./chart"]}
        steps = job_steps(job)
        assert [s["id"] for s in steps] == ["step-0", "step-2"]
        assert find_helm_steps(job, "lint")[0].command == "lint"


class TestVariableReferences:
    """Test reference parsing."""

    def test_needs_reference(self):
        assert parse_variable_reference("${{ needs.infra.outputs.vpc_id }}") == (
            VariableScope.NEEDS, "vpc_id", "infra",
        )

    def test_env_reference(self):
        assert parse_variable_reference("env.CLUSTER") == (VariableScope.ENV, "CLUSTER", None)

    def test_other_reference(self):
        assert parse_variable_reference("secrets.TOKEN") == (VariableScope.OTHER, "secrets.TOKEN", None)


class TestTraceVariable:
    """Test origin tracing per scope."""

    @pytest.fixture
    def workflow(self):
        return {"jobs": {
            "infra": {"steps": [{"id": "out", "run": "terraform output -raw vpc_id"}]},
            "plan": {"steps": [{"run": "terraform apply"}]},
        }}

    def test_needs_with_matching_output(self, workflow):
        ctx = TraceContext(workflow=workflow, job={}, dependent_jobs=["infra"])
        origin = trace_variable("vpc_id", VariableScope.NEEDS, ctx)
        assert origin.type == "terraform_output"
        assert origin.confidence == 85
        assert origin.source == "infra.out"

    def test_needs_terraform_job_without_output(self, workflow):
        ctx = TraceContext(workflow=workflow, job={}, dependent_jobs=["plan"])
        origin = trace_variable("subnet_ids", VariableScope.NEEDS, ctx)
        assert (origin.type, origin.confidence) == ("terraform_output", 60)

    def test_needs_scans_every_dependency(self, workflow):
        ctx = TraceContext(workflow=workflow, job={}, dependent_jobs=["plan", "infra"])
        origin = trace_variable("vpc_id", VariableScope.NEEDS, ctx)
        assert (origin.source, origin.confidence) == ("infra.out", 85)

    def test_needs_respects_owner(self, workflow):
        ctx = TraceContext(workflow=workflow, job={}, dependent_jobs=["plan", "infra"])

        origin = trace_variable("vpc_id", VariableScope.NEEDS, ctx, owner="infra")
        assert (origin.source, origin.confidence) == ("infra.out", 85)

        origin = trace_variable("vpc_id", VariableScope.NEEDS, ctx, owner="plan")
        assert (origin.source, origin.confidence) == ("plan", 60)

    def test_needs_available_output(self, workflow):
        ctx = TraceContext(workflow=workflow, job={}, available_outputs=["image"])
        origin = trace_variable("image", VariableScope.NEEDS, ctx)
        assert (origin.type, origin.confidence) == ("job_output", 75)

    def test_needs_unknown(self, workflow):
        ctx = TraceContext(workflow=workflow, job={})
        assert trace_variable("nothing", VariableScope.NEEDS, ctx).type == "unknown"

    def test_env_scopes(self):
        ctx = TraceContext(
            workflow={},
            job={"env": {"VPC": "${{ needs.infra.outputs.vpc_id }}", "REGION": "us-east-1"}},
            env_in_scope={"CLUSTER": "$(terraform output -raw cluster)", "TEAM": "web"},
        )
        assert trace_variable("VPC", "env", ctx).confidence == 80
        assert trace_variable("REGION", "env", ctx).confidence == 40
        assert trace_variable("CLUSTER", "env", ctx).confidence == 70
        assert trace_variable("TEAM", "env", ctx).confidence == 35
        assert trace_variable("NOPE", "env", ctx).type == "unknown"

    def test_steps_scope(self):
        ctx = TraceContext(workflow={}, job={}, steps=[
            {"id": "tf", "run": "terraform output -json"},
            {"id": "build", "run": "make"},
        ])
        origin = trace_variable("endpoint", VariableScope.STEPS, ctx, owner="tf")
        assert (origin.type, origin.confidence) == ("terraform_output", 90)
        assert trace_variable("digest", VariableScope.STEPS, ctx, owner="build").type == "step_output"

    def test_steps_without_owner_need_the_output_name(self):
        ctx = TraceContext(workflow={}, job={}, steps=[
            {"id": "build", "run": "make"},
            {"id": "tf", "run": "terraform output -raw vpc_id"},
        ])
        assert trace_variable("digest", VariableScope.STEPS, ctx).type == "unknown"

        origin = trace_variable("vpc_id", VariableScope.STEPS, ctx)
        assert (origin.type, origin.confidence, origin.source) == ("terraform_output", 90, "tf.vpc_id")

    def test_naming_convention_fallback(self):
        ctx = TraceContext(workflow={}, job={})
        origin = trace_variable("eks_cluster", VariableScope.OTHER, ctx)
        assert (origin.type, origin.confidence) == ("terraform_output", 45)
        assert trace_variable("banana", "bogus-scope", ctx).type == "unknown"
