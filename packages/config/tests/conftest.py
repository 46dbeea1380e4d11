"""Pytest configuration and fixtures for config package tests."""

import pytest


@pytest.fixture
def settings_file(tmp_path):
    """Write a settings YAML file and return its path."""

    def _write(text: str, name: str = "settings.yaml"):
        path = tmp_path / name
        path.write_text(text)
        return path

    return _write


@pytest.fixture
def whitelist():
    """Per-message client options whitelist."""
    return {
        "valid_clients_to_use": ["openrouter", "octoai"],
        "openrouter": ["model", "model_options.temperature"],
    }
