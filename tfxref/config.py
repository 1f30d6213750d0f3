"""Options for detection and linking, optionally loaded from tfxref.toml."""
import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path

from .models import FLOW_PATTERNS

DEFAULT_CONFIG_NAME = "tfxref.toml"


@dataclass
class DetectorOptions:
    """Options for TfHelmDetector."""
    min_confidence: float = 40
    max_flows: int = 100
    enabled_patterns: dict[str, bool] = field(
        default_factory=lambda: {p: True for p in FLOW_PATTERNS}
    )
    debug: bool = False

    def is_enabled(self, pattern: str) -> bool:
        return self.enabled_patterns.get(pattern, True)

    def to_dict(self) -> dict:
        return {
            "minConfidence": self.min_confidence,
            "maxFlows": self.max_flows,
            "enabledPatterns": dict(self.enabled_patterns),
            "debug": self.debug,
        }


@dataclass
class LinkerOptions:
    """Options for the job-to-infrastructure linker."""
    min_confidence: float = 50
    fuzzy_path_matching: bool = True
    name_similarity_matching: bool = True
    max_edges_per_operation: int = 5


def _load_toml(path: Path) -> dict:
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError:
        return {}
    try:
        data = tomllib.loads(raw)
    except tomllib.TOMLDecodeError as e:
        raise ValueError(f"Failed to parse {path}: {e}") from e
    return data if isinstance(data, dict) else {}


def load_config(root: Path | None = None, config_path: Path | None = None) -> dict:
    """Read tfxref.toml from root (or the cwd) unless an explicit path is given."""
    if config_path is None:
        base = root if root is not None else Path.cwd()
        config_path = base / DEFAULT_CONFIG_NAME
    return _load_toml(config_path)


def _section(data: dict, name: str) -> dict:
    section = data.get(name, {})
    return section if isinstance(section, dict) else {}


def detector_options_from_config(data: dict) -> DetectorOptions:
    """Map the [detector] table onto DetectorOptions; unknown keys are ignored."""
    section = _section(data, "detector")
    options = DetectorOptions()
    if "min_confidence" in section:
        options.min_confidence = float(section["min_confidence"])
    if "max_flows" in section:
        options.max_flows = int(section["max_flows"])
    if "debug" in section:
        options.debug = bool(section["debug"])

    disabled = section.get("disabled_patterns", [])
    if isinstance(disabled, list):
        for pattern in disabled:
            if pattern in FLOW_PATTERNS:
                options.enabled_patterns[pattern] = False

    enabled = section.get("enabled_patterns")
    if isinstance(enabled, dict):
        for pattern, flag in enabled.items():
            if pattern in FLOW_PATTERNS:
                options.enabled_patterns[pattern] = bool(flag)
    return options


def linker_options_from_config(data: dict) -> LinkerOptions:
    """Map the [linker] table onto LinkerOptions; unknown keys are ignored."""
    section = _section(data, "linker")
    known = {f.name for f in fields(LinkerOptions)}
    values = {k: v for k, v in section.items() if k in known}
    return LinkerOptions(**values)
