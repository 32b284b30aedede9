"""Configuration management for speechcore."""

import logging
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Optional

import yaml

logger = logging.getLogger(__name__)


@dataclass
class CaptureConfig:
    """Microphone capture configuration.

    ``echo_cancellation`` is kept for settings files shared with browser
    clients; PortAudio has no echo canceller, so capture ignores it.
    """
    device: str = "default"
    sample_rate: int = 16000
    channels: int = 1
    time_slice_ms: int = 500
    noise_suppression: bool = True
    echo_cancellation: bool = True
    auto_gain: bool = True


@dataclass
class VADConfig:
    """Voice activity detection configuration.

    Durations are in milliseconds, frame and hop sizes in samples.
    ``spectral_threshold`` is validated and stored but not used in scoring;
    the spectral vote compares the centroid against ``spectral_centroid_hz``.
    """
    sensitivity: float = 0.8
    min_speech_duration_ms: int = 200
    silence_timeout_ms: int = 1000
    sample_rate: int = 16000
    frame_size: int = 1024
    hop_size: int = 512
    energy_threshold: float = 0.01
    energy_ratio: float = 2.0
    spectral_threshold: float = 0.3
    spectral_centroid_hz: float = 1000.0
    zcr_threshold: float = 0.1
    zcr_upper_bound: float = 0.5
    adaptive_threshold: bool = True
    noise_floor_learning: bool = True
    noise_floor_samples: int = 50

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        """Raise ValueError if any field is out of range."""
        if not 0.0 <= self.sensitivity <= 1.0:
            raise ValueError(f"sensitivity must be within [0, 1], got {self.sensitivity}")
        for name in (
            "min_speech_duration_ms",
            "silence_timeout_ms",
            "energy_threshold",
            "energy_ratio",
            "spectral_threshold",
            "spectral_centroid_hz",
            "zcr_threshold",
            "zcr_upper_bound",
            "noise_floor_samples",
        ):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0")
        if self.sample_rate <= 0 or self.frame_size <= 0 or self.hop_size <= 0:
            raise ValueError("sample_rate, frame_size and hop_size must be positive")
        if self.hop_size > self.frame_size:
            raise ValueError("hop_size must not exceed frame_size")

    def merged(self, **changes) -> "VADConfig":
        """Return a validated copy with the given fields replaced."""
        unknown = set(changes) - {f.name for f in fields(self)}
        if unknown:
            raise ValueError(f"Unknown VAD settings: {sorted(unknown)}")
        return replace(self, **changes)


@dataclass
class LocalConfig:
    """On-device recognition engine configuration."""
    whisper_model: str = "small.en"
    whisper_device: str = "cpu"
    whisper_compute_type: str = "int8"
    language: str = "en"
    beam_size: int = 5
    interim_interval_ms: int = 1500
    silence_window_ms: int = 8000
    max_consecutive_silence: int = 3


@dataclass
class ProviderConfig:
    """Credentials and endpoints for remote speech backends."""
    openai_api_key: Optional[str] = None
    openai_base_url: str = "https://api.openai.com/v1"
    google_api_key: Optional[str] = None
    azure_speech_key: Optional[str] = None
    azure_region: str = "eastus"
    request_timeout_s: float = 45.0
    reprocess_interval_ms: int = 4000

    def with_environment(self) -> "ProviderConfig":
        """Fill missing credentials from environment variables."""
        return replace(
            self,
            openai_api_key=self.openai_api_key or os.environ.get("OPENAI_API_KEY"),
            google_api_key=(
                self.google_api_key
                or os.environ.get("GOOGLE_API_KEY")
                or os.environ.get("GEMINI_API_KEY")
            ),
            azure_speech_key=self.azure_speech_key or os.environ.get("AZURE_SPEECH_KEY"),
            azure_region=os.environ.get("AZURE_SPEECH_REGION", self.azure_region),
        )


@dataclass
class OrchestratorConfig:
    """Recognition session watchdog configuration."""
    preferred_provider: str = "local"
    progress_timeout_ms: int = 30000
    max_restarts_per_minute: int = 10
    max_consecutive_restarts: int = 3
    restart_delay_ms: int = 200


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"
    file: Optional[str] = None
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@dataclass
class Config:
    """Main configuration container."""
    capture: CaptureConfig = field(default_factory=CaptureConfig)
    vad: VADConfig = field(default_factory=VADConfig)
    local: LocalConfig = field(default_factory=LocalConfig)
    providers: ProviderConfig = field(default_factory=ProviderConfig)
    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_yaml(cls, path: str | Path) -> "Config":
        """Load configuration from a YAML file."""
        path = Path(path)
        if not path.exists():
            logger.warning(f"Config file not found: {path}, using defaults")
            return cls()

        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}

        return cls(
            capture=CaptureConfig(**data.get("capture", {})),
            vad=VADConfig(**data.get("vad", {})),
            local=LocalConfig(**data.get("local", {})),
            providers=ProviderConfig(**data.get("providers", {})),
            orchestrator=OrchestratorConfig(**data.get("orchestrator", {})),
            logging=LoggingConfig(**data.get("logging", {})),
        )

    def to_yaml(self, path: str | Path, include_secrets: bool = False) -> None:
        """Save configuration to a YAML file.

        Credentials are left out unless ``include_secrets`` is set.
        """
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        data = asdict(self)
        if not include_secrets:
            for key in ("openai_api_key", "google_api_key", "azure_speech_key"):
                data["providers"][key] = None

        with open(path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)

    def setup_logging(self) -> None:
        """Configure logging based on settings."""
        log_level = getattr(logging, self.logging.level.upper(), logging.INFO)

        handlers = [logging.StreamHandler()]

        if self.logging.file:
            log_path = Path(self.logging.file)
            log_path.parent.mkdir(parents=True, exist_ok=True)
            handlers.append(logging.FileHandler(log_path))

        logging.basicConfig(
            level=log_level,
            format=self.logging.format,
            handlers=handlers,
        )


def load_config(path: Optional[str] = None) -> Config:
    """Load configuration from file or environment."""
    if path is None:
        path = os.environ.get("SPEECHCORE_CONFIG", "config/speechcore.yaml")
    config = Config.from_yaml(path)
    config.providers = config.providers.with_environment()
    return config
