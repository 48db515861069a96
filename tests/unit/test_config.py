"""Tests for configuration loading."""

import pytest

from janus_exporter.config import ConfigError, ExporterConfig, MetricsConfig, load_config
from janus_exporter.config.settings import build_config


pytestmark = pytest.mark.unit


def _write(tmp_path, text):
    path = tmp_path / "config.yaml"
    path.write_text(text)
    return str(path)


class TestDefaults:

    def test_no_file_gives_defaults(self):
        config = load_config()

        assert config.server.host == "0.0.0.0"
        assert config.server.port == 8080
        assert config.server.event_path == "/event"
        assert config.server.metrics_path == "/metrics"
        assert config.metrics.histogram_cap_minutes == 60
        assert config.metrics.histogram_bucket_width_minutes == 10
        assert config.metrics.collect_process_metrics is True
        assert config.reconciliation.reap_on_session_end is True
        assert config.logging.level == "INFO"
        assert config.logging.format == "text"

    @pytest.mark.parametrize("kwargs", [
        {"histogram_cap_minutes": 0},
        {"histogram_bucket_width_minutes": -10},
    ])
    def test_invalid_histogram_settings(self, kwargs):
        with pytest.raises(ConfigError):
            ExporterConfig(metrics=MetricsConfig(**kwargs))


class TestLoadConfig:

    def test_yaml_file(self, tmp_path):
        path = _write(tmp_path, """
server:
  port: 7088
metrics:
  histogram_cap_minutes: 120
  collect_process_metrics: false
logging:
  format: json
""")

        config = load_config(path)

        assert config.server.port == 7088
        assert config.server.host == "0.0.0.0"
        assert config.metrics.histogram_cap_minutes == 120
        assert config.metrics.collect_process_metrics is False
        assert config.logging.format == "json"

    def test_env_substitution(self, tmp_path, monkeypatch):
        monkeypatch.setenv("PORT", "9100")
        monkeypatch.setenv("REAP", "no")
        monkeypatch.delenv("LOG_LEVEL", raising=False)
        path = _write(tmp_path, """
server:
  port: "${PORT:8080}"
reconciliation:
  reap_on_session_end: "${REAP:true}"
logging:
  level: "${LOG_LEVEL:DEBUG}"
""")

        config = load_config(path)

        assert config.server.port == 9100
        assert config.reconciliation.reap_on_session_end is False
        assert config.logging.level == "DEBUG"

    def test_unset_env_var_without_default_keeps_default(self, tmp_path, monkeypatch):
        monkeypatch.delenv("JANUS_EXPORTER_UNSET", raising=False)
        path = _write(tmp_path, 'server:\n  port: "${JANUS_EXPORTER_UNSET}"\n')

        assert load_config(path).server.port == 8080

    def test_empty_file(self, tmp_path):
        assert load_config(_write(tmp_path, "")) == ExporterConfig()

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_config(str(tmp_path / "missing.yaml"))

    def test_invalid_yaml(self, tmp_path):
        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_config(_write(tmp_path, "server: [unclosed"))

    def test_top_level_must_be_mapping(self, tmp_path):
        with pytest.raises(ConfigError):
            load_config(_write(tmp_path, "- server\n- metrics\n"))

    def test_shipped_local_config(self, monkeypatch):
        import pathlib

        for name in ("SERVER_HOST", "PORT", "HISTOGRAM_CAP_MINUTES", "LOG_LEVEL", "LOG_FORMAT"):
            monkeypatch.delenv(name, raising=False)
        path = pathlib.Path(__file__).parents[2] / "config" / "local.yaml"

        config = load_config(str(path))

        assert config.server.port == 8080
        assert config.metrics.histogram_cap_minutes == 60


class TestBuildConfig:

    def test_unknown_section(self):
        with pytest.raises(ConfigError, match="Unknown config sections: database"):
            build_config({"database": {}})

    def test_unknown_key(self):
        with pytest.raises(ConfigError, match="Unknown keys in 'server': ssl"):
            build_config({"server": {"ssl": True}})

    def test_section_must_be_mapping(self):
        with pytest.raises(ConfigError):
            build_config({"server": "localhost"})

    @pytest.mark.parametrize("section,key,value", [
        ("server", "port", "eighty"),
        ("server", "port", True),
        ("metrics", "collect_process_metrics", "maybe"),
    ])
    def test_bad_values(self, section, key, value):
        with pytest.raises(ConfigError, match=f"{section}.{key}"):
            build_config({section: {key: value}})

    def test_invalid_log_format(self):
        with pytest.raises(ConfigError):
            build_config({"logging": {"format": "xml"}})
