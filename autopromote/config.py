"""Configuration objects for every pipeline stage.

Each stage receives its config explicitly at construction. Configs are frozen
dataclasses validated in ``__post_init__``; ``from_env()`` builds one from
``AUTOPROMOTE_*`` environment variables read at call time, not import time.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field


def _get_env(key: str, default: str = "") -> str:
    """Read env var at call time."""
    return os.getenv(key, default)


def _env_float(key: str, default: float) -> float:
    raw = _get_env(key)
    return float(raw) if raw else default


def _env_optional_float(key: str) -> float | None:
    raw = _get_env(key)
    return float(raw) if raw else None


def _env_int(key: str, default: int) -> int:
    raw = _get_env(key)
    return int(raw) if raw else default


def _env_bool(key: str, default: bool) -> bool:
    raw = _get_env(key)
    if not raw:
        return default
    return raw.lower() in ("1", "true", "yes", "on")


def _check_unit_interval(name: str, value: float) -> None:
    if not 0.0 <= value <= 1.0:
        raise ValueError(f"{name} must be within [0, 1], got {value}")


@dataclass(frozen=True)
class DeterminismConfig:
    """Thresholds for determinism analysis.

    Attributes:
        min_sample_size:              Observations required before an operation is scored.
        deterministic_threshold:      Determinism at or above this is ``deterministic``.
        semi_deterministic_threshold: Determinism at or above this is ``semi-deterministic``.
    """

    min_sample_size: int = 3
    deterministic_threshold: float = 0.95
    semi_deterministic_threshold: float = 0.7

    def __post_init__(self) -> None:
        if self.min_sample_size < 1:
            raise ValueError("min_sample_size must be at least 1")
        _check_unit_interval("deterministic_threshold", self.deterministic_threshold)
        _check_unit_interval(
            "semi_deterministic_threshold", self.semi_deterministic_threshold
        )
        if self.semi_deterministic_threshold > self.deterministic_threshold:
            raise ValueError(
                "semi_deterministic_threshold cannot exceed deterministic_threshold"
            )

    @classmethod
    def from_env(cls) -> DeterminismConfig:
        return cls(
            min_sample_size=_env_int("AUTOPROMOTE_MIN_SAMPLE_SIZE", 3),
            deterministic_threshold=_env_float(
                "AUTOPROMOTE_DETERMINISTIC_THRESHOLD", 0.95
            ),
            semi_deterministic_threshold=_env_float(
                "AUTOPROMOTE_SEMI_DETERMINISTIC_THRESHOLD", 0.7
            ),
        )


@dataclass(frozen=True)
class PromotionDetectorConfig:
    """Filtering and scoring knobs for promotion detection.

    ``min_confidence`` only sets the ``meets_confidence`` flag; candidates
    below it are still returned so callers can pick strict or exploratory views.
    """

    min_determinism: float = 0.95
    min_confidence: float = 0.0
    chars_per_token: int = 4

    def __post_init__(self) -> None:
        _check_unit_interval("min_determinism", self.min_determinism)
        _check_unit_interval("min_confidence", self.min_confidence)
        if self.chars_per_token <= 0:
            raise ValueError("chars_per_token must be positive")

    @classmethod
    def from_env(cls) -> PromotionDetectorConfig:
        return cls(
            min_determinism=_env_float("AUTOPROMOTE_DETECTOR_MIN_DETERMINISM", 0.95),
            min_confidence=_env_float("AUTOPROMOTE_DETECTOR_MIN_CONFIDENCE", 0.0),
            chars_per_token=_env_int("AUTOPROMOTE_CHARS_PER_TOKEN", 4),
        )


@dataclass(frozen=True)
class GatekeeperConfig:
    """Approval thresholds for the gatekeeper.

    The calibration thresholds (``min_f1``, ``min_accuracy``, ``min_mcc``) are
    optional. ``None`` means the check is skipped, not passed by default.
    """

    min_determinism: float = 0.95
    min_confidence: float = 0.85
    min_observations: int = 5
    min_f1: float | None = None
    min_accuracy: float | None = None
    min_mcc: float | None = None

    def __post_init__(self) -> None:
        _check_unit_interval("min_determinism", self.min_determinism)
        _check_unit_interval("min_confidence", self.min_confidence)
        if self.min_observations < 0:
            raise ValueError("min_observations cannot be negative")
        if self.min_mcc is not None and not -1.0 <= self.min_mcc <= 1.0:
            raise ValueError(f"min_mcc must be within [-1, 1], got {self.min_mcc}")

    @classmethod
    def from_env(cls) -> GatekeeperConfig:
        return cls(
            min_determinism=_env_float("AUTOPROMOTE_GATE_MIN_DETERMINISM", 0.95),
            min_confidence=_env_float("AUTOPROMOTE_GATE_MIN_CONFIDENCE", 0.85),
            min_observations=_env_int("AUTOPROMOTE_GATE_MIN_OBSERVATIONS", 5),
            min_f1=_env_optional_float("AUTOPROMOTE_GATE_MIN_F1"),
            min_accuracy=_env_optional_float("AUTOPROMOTE_GATE_MIN_ACCURACY"),
            min_mcc=_env_optional_float("AUTOPROMOTE_GATE_MIN_MCC"),
        )


@dataclass(frozen=True)
class ScriptGeneratorConfig:
    """Defaults stamped onto every generated script operation."""

    default_timeout_ms: int = 30_000
    default_working_dir: str = "."

    @classmethod
    def from_env(cls) -> ScriptGeneratorConfig:
        return cls(
            default_timeout_ms=_env_int("AUTOPROMOTE_SCRIPT_TIMEOUT_MS", 30_000),
            default_working_dir=_get_env("AUTOPROMOTE_SCRIPT_WORKING_DIR", "."),
        )


@dataclass(frozen=True)
class DriftMonitorConfig:
    """Drift monitoring settings.

    Attributes:
        sensitivity: Consecutive mismatches that trigger demotion.
        enabled:     When False, checks record nothing and never demote.
    """

    sensitivity: int = 3
    enabled: bool = True

    def __post_init__(self) -> None:
        if self.sensitivity < 1:
            raise ValueError("sensitivity must be at least 1")

    @classmethod
    def from_env(cls) -> DriftMonitorConfig:
        return cls(
            sensitivity=_env_int("AUTOPROMOTE_DRIFT_SENSITIVITY", 3),
            enabled=_env_bool("AUTOPROMOTE_DRIFT_ENABLED", True),
        )


@dataclass(frozen=True)
class SandboxConfig:
    """Configuration for the script sandbox.

    With ``image`` unset, scripts run as plain bash subprocesses. With an
    image, they are wrapped in a Docker container with no network, resource
    limits and a read-only root filesystem.
    """

    image: str | None = None
    workspace_mount: str = "/workspace"
    network_mode: str = "none"
    memory_limit: str = "512m"
    cpu_limit: str = "1.0"
    read_only_root: bool = True
    timeout_seconds: float = 30.0

    def __post_init__(self) -> None:
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")

    @classmethod
    def from_env(cls) -> SandboxConfig:
        return cls(
            image=_get_env("AUTOPROMOTE_SANDBOX_IMAGE") or None,
            network_mode=_get_env("AUTOPROMOTE_SANDBOX_NETWORK", "none"),
            memory_limit=_get_env("AUTOPROMOTE_SANDBOX_MEMORY", "512m"),
            cpu_limit=_get_env("AUTOPROMOTE_SANDBOX_CPUS", "1.0"),
            timeout_seconds=_env_float("AUTOPROMOTE_SANDBOX_TIMEOUT_SECONDS", 30.0),
        )


@dataclass(frozen=True)
class PipelineConfig:
    """All stage configs plus where the pipeline keeps its records."""

    store_dir: str = "data/promotion"
    determinism: DeterminismConfig = field(default_factory=DeterminismConfig)
    detector: PromotionDetectorConfig = field(default_factory=PromotionDetectorConfig)
    gatekeeper: GatekeeperConfig = field(default_factory=GatekeeperConfig)
    scripts: ScriptGeneratorConfig = field(default_factory=ScriptGeneratorConfig)
    drift: DriftMonitorConfig = field(default_factory=DriftMonitorConfig)
    sandbox: SandboxConfig = field(default_factory=SandboxConfig)

    @classmethod
    def from_env(cls) -> PipelineConfig:
        return cls(
            store_dir=_get_env("AUTOPROMOTE_STORE_DIR", "data/promotion"),
            determinism=DeterminismConfig.from_env(),
            detector=PromotionDetectorConfig.from_env(),
            gatekeeper=GatekeeperConfig.from_env(),
            scripts=ScriptGeneratorConfig.from_env(),
            drift=DriftMonitorConfig.from_env(),
            sandbox=SandboxConfig.from_env(),
        )
