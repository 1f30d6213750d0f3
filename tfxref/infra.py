"""Loads workflows and Terraform/Helm graph nodes from disk for the command line."""
import posixpath
from pathlib import Path

import hcl2
import yaml

from .models import InfraNode, short_hash

HELMFILE_NAMES = ("helmfile.yaml", "helmfile.yml")


def _workflow_loader():
    class Loader(yaml.SafeLoader):
        pass

    # Keep GitHub's `on:` a string key instead of YAML 1.1's boolean
    Loader.yaml_implicit_resolvers = {
        key: [(tag, regexp) for tag, regexp in values if tag != "tag:yaml.org,2002:bool"]
        for key, values in yaml.SafeLoader.yaml_implicit_resolvers.items()
    }
    return Loader


def load_workflow(path: Path) -> dict:
    """Read a CI workflow (YAML or JSON) into plain data."""
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.load(handle, Loader=_workflow_loader())
    except yaml.YAMLError as e:
        raise ValueError(f"Failed to parse {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Workflow {path} is not a mapping")
    return data


def _label(name) -> str:
    return str(name).strip('"')


def _blocks(mapping: dict):
    """Label/body pairs, skipping parser bookkeeping keys like __is_block__."""
    return [(_label(k), v) for k, v in mapping.items() if not str(k).startswith("__")]


def _node_id(node_type: str, file_path: str, name: str) -> str:
    return f"{node_type.replace('_', '-')}-{short_hash(f'{node_type}:{file_path}:{name}')}"


class InfraLoader:
    """Collects Terraform and Helm nodes from a directory tree."""

    def __init__(self, root: Path):
        self.root = root
        self.terraform_nodes: list[InfraNode] = []
        self.helm_nodes: list[InfraNode] = []
        self.files_parsed: int = 0

    def _relative(self, path: Path) -> str:
        try:
            return path.relative_to(self.root).as_posix()
        except ValueError:
            return path.as_posix()

    def load(self) -> None:
        """Parse every .tf file, Chart.yaml and helmfile under the root."""
        tf_files = sorted(self.root.glob("**/*.tf"))
        chart_files = sorted(self.root.glob("**/Chart.yaml"))
        helmfiles = sorted(p for name in HELMFILE_NAMES for p in self.root.glob(f"**/{name}"))
        if not tf_files and not chart_files and not helmfiles:
            raise ValueError(f"No Terraform or Helm files found in {self.root}")

        for tf_file in tf_files:
            self._parse_terraform_file(tf_file)
        for chart_file in chart_files:
            self._parse_chart_file(chart_file)
        for helmfile in helmfiles:
            self._parse_helmfile(helmfile)

    def _parse_terraform_file(self, path: Path) -> None:
        """Extract output, module and resource nodes from a .tf file."""
        content = path.read_text(encoding="utf-8")
        self.files_parsed += 1

        try:
            parsed = hcl2.loads(content)
        except Exception as e:
            raise ValueError(f"Failed to parse {path}: {e}") from e

        file_path = self._relative(path)
        module_path = Path(file_path).parent.as_posix()

        for output in parsed.get("output", []):
            for name, config in _blocks(output):
                sensitive = isinstance(config, dict) and config.get("sensitive") is True
                self.terraform_nodes.append(InfraNode(
                    id=_node_id("terraform_output", file_path, name),
                    type="terraform_output",
                    name=name,
                    file_path=file_path,
                    metadata={"modulePath": module_path, "outputName": name, "sensitive": sensitive},
                ))

        for module in parsed.get("module", []):
            for name, config in _blocks(module):
                source = config.get("source") if isinstance(config, dict) else None
                source = _label(source) if source else None
                local = source and source.startswith(".")
                self.terraform_nodes.append(InfraNode(
                    id=_node_id("terraform_module", file_path, name),
                    type="terraform_module",
                    name=name,
                    file_path=file_path,
                    metadata={
                        "modulePath": posixpath.normpath(f"{module_path}/{source}") if local else module_path,
                        "source": source,
                    },
                ))

        for resource in parsed.get("resource", []):
            for resource_type, instances in _blocks(resource):
                if not isinstance(instances, dict):
                    continue
                for name, _config in _blocks(instances):
                    qualified = f"{resource_type}.{name}"
                    self.terraform_nodes.append(InfraNode(
                        id=_node_id("terraform_resource", file_path, qualified),
                        type="terraform_resource",
                        name=qualified,
                        file_path=file_path,
                        metadata={"modulePath": module_path, "resourceType": resource_type},
                    ))

    def _load_yaml(self, path: Path):
        try:
            with path.open("r", encoding="utf-8") as handle:
                return yaml.safe_load(handle)
        except yaml.YAMLError as e:
            raise ValueError(f"Failed to parse {path}: {e}") from e

    def _parse_chart_file(self, path: Path) -> None:
        chart = self._load_yaml(path)
        self.files_parsed += 1
        if not isinstance(chart, dict) or not chart.get("name"):
            return

        file_path = self._relative(path)
        name = str(chart["name"])
        self.helm_nodes.append(InfraNode(
            id=_node_id("helm_chart", file_path, name),
            type="helm_chart",
            name=name,
            file_path=file_path,
            metadata={
                "chartPath": Path(file_path).parent.as_posix(),
                "chartName": name,
                "version": chart.get("version"),
            },
        ))

    def _parse_helmfile(self, path: Path) -> None:
        helmfile = self._load_yaml(path)
        self.files_parsed += 1
        releases = helmfile.get("releases") if isinstance(helmfile, dict) else None
        if not isinstance(releases, list):
            return

        file_path = self._relative(path)
        for release in releases:
            if not isinstance(release, dict) or not release.get("name"):
                continue
            name = str(release["name"])
            chart = str(release.get("chart") or "")
            self.helm_nodes.append(InfraNode(
                id=_node_id("helmfile_release", file_path, name),
                type="helmfile_release",
                name=name,
                file_path=file_path,
                metadata={
                    "releaseName": name,
                    "namespace": release.get("namespace"),
                    "chartPath": chart,
                    "chartName": chart.rsplit("/", 1)[-1] if chart else None,
                },
            ))
