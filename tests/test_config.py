# Copyright 2024 Flyto
# Licensed under the Apache License, Version 2.0
"""Tests for BenchConfig — env/dict loading, defaults, clamping."""
from skillbench.config import DEFAULT_MODEL, BenchConfig


class TestBenchConfig:

    def test_defaults(self):
        cfg = BenchConfig()
        assert cfg.cli_path == "claude"
        assert cfg.model == DEFAULT_MODEL
        assert cfg.default_timeout_seconds == 60
        assert cfg.default_retry_count == 2
        assert cfg.default_concurrency == 2
        assert cfg.log_level == "INFO"

    def test_from_dict(self):
        cfg = BenchConfig.from_dict({
            "cli_path": "/usr/local/bin/claude",
            "model": "claude-haiku-4-5-20251001",
            "default_retry_count": 0,
            "default_concurrency": 8,
        })
        assert cfg.cli_path == "/usr/local/bin/claude"
        assert cfg.model == "claude-haiku-4-5-20251001"
        assert cfg.default_retry_count == 0
        assert cfg.default_concurrency == 8

    def test_from_dict_defaults(self):
        cfg = BenchConfig.from_dict({})
        assert cfg.default_timeout_seconds == 60
        assert cfg.recompose_timeout_seconds == 180

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("SKILLBENCH_CLI_PATH", "/opt/claude")
        monkeypatch.setenv("SKILLBENCH_TIMEOUT_SECONDS", "30")
        monkeypatch.setenv("SKILLBENCH_CONCURRENCY", "4")
        monkeypatch.setenv("SKILLBENCH_LOG_LEVEL", "debug")
        cfg = BenchConfig.from_env()
        assert cfg.cli_path == "/opt/claude"
        assert cfg.default_timeout_seconds == 30
        assert cfg.default_concurrency == 4
        assert cfg.log_level == "DEBUG"

    def test_from_env_defaults(self, monkeypatch):
        for name in ("SKILLBENCH_CLI_PATH", "SKILLBENCH_MODEL", "SKILLBENCH_RETRY_COUNT"):
            monkeypatch.delenv(name, raising=False)
        cfg = BenchConfig.from_env()
        assert cfg.cli_path == "claude"
        assert cfg.model == DEFAULT_MODEL
        assert cfg.default_retry_count == 2


class TestValidation:

    def test_timeout_clamped(self):
        assert BenchConfig(default_timeout_seconds=0).default_timeout_seconds == 1
        assert BenchConfig(default_timeout_seconds=99999).default_timeout_seconds == 3600

    def test_retry_clamped(self):
        assert BenchConfig(default_retry_count=-1).default_retry_count == 0
        assert BenchConfig(default_retry_count=50).default_retry_count == 10

    def test_concurrency_clamped(self):
        assert BenchConfig(default_concurrency=0).default_concurrency == 1
        assert BenchConfig(default_concurrency=100).default_concurrency == 32

    def test_unknown_log_level(self):
        assert BenchConfig(log_level="LOUD").log_level == "INFO"

    def test_scoring_model_falls_back(self):
        assert BenchConfig(model="m1").resolved_scoring_model == "m1"
        assert BenchConfig(model="m1", scoring_model="m2").resolved_scoring_model == "m2"
