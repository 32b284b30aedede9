"""Tests for the config module."""

import logging

import pytest
import yaml

from speechcore.config import (
    CaptureConfig,
    Config,
    LocalConfig,
    LoggingConfig,
    OrchestratorConfig,
    ProviderConfig,
    VADConfig,
    load_config,
)


@pytest.fixture
def clean_env(monkeypatch):
    """Remove credential variables that would leak into provider config."""
    for name in (
        "OPENAI_API_KEY",
        "GOOGLE_API_KEY",
        "GEMINI_API_KEY",
        "AZURE_SPEECH_KEY",
        "AZURE_SPEECH_REGION",
        "SPEECHCORE_CONFIG",
    ):
        monkeypatch.delenv(name, raising=False)


class TestCaptureConfig:
    """Tests for CaptureConfig dataclass."""

    def test_default_values(self):
        """Test default CaptureConfig values."""
        config = CaptureConfig()
        assert config.device == "default"
        assert config.sample_rate == 16000
        assert config.channels == 1
        assert config.time_slice_ms == 500
        assert config.noise_suppression is True
        assert config.echo_cancellation is True
        assert config.auto_gain is True


class TestVADConfig:
    """Tests for VADConfig validation and merging."""

    def test_default_values(self):
        """Test default VADConfig values."""
        config = VADConfig()
        assert config.sensitivity == 0.8
        assert config.min_speech_duration_ms == 200
        assert config.silence_timeout_ms == 1000
        assert config.frame_size == 1024
        assert config.hop_size == 512
        assert config.energy_threshold == 0.01
        assert config.energy_ratio == 2.0
        assert config.noise_floor_samples == 50

    @pytest.mark.parametrize("sensitivity", [-0.1, 1.5])
    def test_sensitivity_out_of_range(self, sensitivity):
        """Test sensitivity outside [0, 1] is rejected."""
        with pytest.raises(ValueError):
            VADConfig(sensitivity=sensitivity)

    def test_sensitivity_bounds_accepted(self):
        """Test the inclusive sensitivity bounds."""
        assert VADConfig(sensitivity=0.0).sensitivity == 0.0
        assert VADConfig(sensitivity=1.0).sensitivity == 1.0

    def test_negative_duration_rejected(self):
        """Test negative durations are rejected."""
        with pytest.raises(ValueError):
            VADConfig(silence_timeout_ms=-1)

    def test_negative_threshold_rejected(self):
        """Test negative thresholds are rejected."""
        with pytest.raises(ValueError):
            VADConfig(energy_threshold=-0.5)

    def test_hop_larger_than_frame_rejected(self):
        """Test hop size may not exceed frame size."""
        with pytest.raises(ValueError):
            VADConfig(frame_size=256, hop_size=512)

    def test_merged_returns_copy(self):
        """Test merged leaves the original untouched."""
        config = VADConfig()
        merged = config.merged(sensitivity=0.3, silence_timeout_ms=500)
        assert merged.sensitivity == 0.3
        assert merged.silence_timeout_ms == 500
        assert config.sensitivity == 0.8

    def test_merged_validates(self):
        """Test merged applies the same validation as construction."""
        with pytest.raises(ValueError):
            VADConfig().merged(sensitivity=2.0)

    def test_merged_unknown_field(self):
        """Test merged rejects unknown settings."""
        with pytest.raises(ValueError, match="Unknown VAD settings"):
            VADConfig().merged(loudness=3)


class TestProviderConfig:
    """Tests for ProviderConfig credential handling."""

    def test_default_values(self):
        """Test default ProviderConfig values."""
        config = ProviderConfig()
        assert config.openai_api_key is None
        assert config.openai_base_url == "https://api.openai.com/v1"
        assert config.azure_region == "eastus"
        assert config.reprocess_interval_ms == 4000

    def test_with_environment(self, clean_env, monkeypatch):
        """Test credentials are filled from the environment."""
        monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
        monkeypatch.setenv("GEMINI_API_KEY", "gemini-env")
        monkeypatch.setenv("AZURE_SPEECH_KEY", "azure-env")
        monkeypatch.setenv("AZURE_SPEECH_REGION", "westus2")

        config = ProviderConfig().with_environment()

        assert config.openai_api_key == "sk-env"
        assert config.google_api_key == "gemini-env"
        assert config.azure_speech_key == "azure-env"
        assert config.azure_region == "westus2"

    def test_with_environment_keeps_explicit_keys(self, clean_env, monkeypatch):
        """Test explicit credentials win over the environment."""
        monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
        config = ProviderConfig(openai_api_key="sk-explicit").with_environment()
        assert config.openai_api_key == "sk-explicit"

    def test_google_key_preferred_over_gemini(self, clean_env, monkeypatch):
        """Test GOOGLE_API_KEY takes precedence over GEMINI_API_KEY."""
        monkeypatch.setenv("GOOGLE_API_KEY", "google-env")
        monkeypatch.setenv("GEMINI_API_KEY", "gemini-env")
        assert ProviderConfig().with_environment().google_api_key == "google-env"


class TestConfig:
    """Tests for main Config class."""

    def test_default_config(self):
        """Test default Config values."""
        config = Config()
        assert isinstance(config.capture, CaptureConfig)
        assert isinstance(config.vad, VADConfig)
        assert isinstance(config.local, LocalConfig)
        assert isinstance(config.providers, ProviderConfig)
        assert isinstance(config.orchestrator, OrchestratorConfig)
        assert isinstance(config.logging, LoggingConfig)
        assert config.orchestrator.progress_timeout_ms == 30000
        assert config.orchestrator.max_restarts_per_minute == 10

    def test_from_yaml_missing_file(self, temp_dir):
        """Test loading from non-existent file returns defaults."""
        config = Config.from_yaml(temp_dir / "nonexistent.yaml")
        assert config.capture.device == "default"
        assert config.orchestrator.preferred_provider == "local"

    def test_from_yaml_valid_file(self, temp_config_file):
        """Test loading from valid YAML file."""
        config = Config.from_yaml(temp_config_file)
        assert config.capture.time_slice_ms == 250
        assert config.vad.sensitivity == 0.9
        assert config.vad.min_speech_duration_ms == 150
        assert config.local.whisper_model == "tiny.en"
        assert config.providers.openai_api_key == "sk-from-file"
        assert config.providers.azure_region == "westeurope"
        assert config.orchestrator.preferred_provider == "openai"
        assert config.orchestrator.max_restarts_per_minute == 4
        assert config.logging.level == "DEBUG"

    def test_from_yaml_empty_file(self, temp_dir):
        """Test loading from empty YAML file."""
        yaml_path = temp_dir / "empty.yaml"
        yaml_path.write_text("")

        config = Config.from_yaml(yaml_path)
        assert config.capture.device == "default"

    def test_from_yaml_invalid_vad(self, temp_dir):
        """Test invalid VAD settings in a file are rejected."""
        yaml_path = temp_dir / "bad.yaml"
        yaml_path.write_text("vad:\n  sensitivity: 3.0\n")

        with pytest.raises(ValueError):
            Config.from_yaml(yaml_path)

    def test_to_yaml_omits_secrets(self, temp_dir):
        """Test credentials are not written by default."""
        config = Config(providers=ProviderConfig(openai_api_key="sk-secret", azure_region="westus"))
        yaml_path = temp_dir / "output.yaml"
        config.to_yaml(yaml_path)

        with open(yaml_path, "r") as f:
            loaded = yaml.safe_load(f)

        assert loaded["providers"]["openai_api_key"] is None
        assert loaded["providers"]["azure_region"] == "westus"

    def test_to_yaml_with_secrets(self, temp_dir):
        """Test credentials are written when requested."""
        config = Config(providers=ProviderConfig(openai_api_key="sk-secret"))
        yaml_path = temp_dir / "output.yaml"
        config.to_yaml(yaml_path, include_secrets=True)

        with open(yaml_path, "r") as f:
            loaded = yaml.safe_load(f)

        assert loaded["providers"]["openai_api_key"] == "sk-secret"

    def test_to_yaml_round_trip(self, temp_dir):
        """Test a saved config loads back with the same values."""
        config = Config(vad=VADConfig(sensitivity=0.6), capture=CaptureConfig(device="hw:1,0"))
        yaml_path = temp_dir / "nested" / "dir" / "config.yaml"
        config.to_yaml(yaml_path)

        loaded = Config.from_yaml(yaml_path)
        assert loaded.vad.sensitivity == 0.6
        assert loaded.capture.device == "hw:1,0"

    def test_setup_logging(self):
        """Test logging setup."""
        for handler in logging.root.handlers[:]:
            logging.root.removeHandler(handler)
        logging.root.setLevel(logging.WARNING)

        config = Config(logging=LoggingConfig(level="DEBUG", file=None))
        config.setup_logging()

        assert logging.getLogger().level == logging.DEBUG

    def test_setup_logging_with_file(self, temp_dir):
        """Test logging setup with file."""
        log_path = temp_dir / "logs" / "speechcore.log"
        config = Config(logging=LoggingConfig(level="INFO", file=str(log_path)))
        config.setup_logging()

        assert log_path.parent.exists()


class TestLoadConfig:
    """Tests for load_config function."""

    def test_load_config_explicit_path(self, temp_config_file, clean_env):
        """Test load_config with explicit path."""
        config = load_config(str(temp_config_file))
        assert config.orchestrator.preferred_provider == "openai"

    def test_load_config_from_env(self, temp_dir, clean_env, monkeypatch):
        """Test load_config from environment variable."""
        config_path = temp_dir / "env_config.yaml"
        config_path.write_text("capture:\n  device: 'from_env'\n")

        monkeypatch.setenv("SPEECHCORE_CONFIG", str(config_path))
        config = load_config()

        assert config.capture.device == "from_env"

    def test_load_config_applies_credentials(self, temp_config_file, clean_env, monkeypatch):
        """Test environment credentials fill gaps left by the file."""
        monkeypatch.setenv("AZURE_SPEECH_KEY", "azure-env")
        config = load_config(str(temp_config_file))

        assert config.providers.openai_api_key == "sk-from-file"
        assert config.providers.azure_speech_key == "azure-env"
