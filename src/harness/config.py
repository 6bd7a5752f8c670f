"""Configuration loading for the execution harness.

Reads a YAML file (``harness.yaml`` by default) into pydantic models and
applies environment-variable overrides for deployment.
"""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator

from harness.sandbox.config import SandboxConfig

logger = logging.getLogger(__name__)


# ── Config Models ─────────────────────────────────────────────────────────────


class PiiRuleConfig(BaseModel):
    """An extra sensitive-value rule appended to the default tokenizer rules."""

    category: str
    pattern: str

    @field_validator("category")
    @classmethod
    def _validate_category(cls, v: str) -> str:
        """Categories become part of ``[CATEGORY_N]`` tokens, so keep them plain."""
        if not re.fullmatch(r"[A-Z][A-Z0-9_]*", v):
            raise ValueError(f"PII rule category must be UPPER_SNAKE_CASE, got {v!r}")
        return v

    @field_validator("pattern")
    @classmethod
    def _validate_pattern(cls, v: str) -> str:
        try:
            re.compile(v)
        except re.error as exc:
            raise ValueError(f"invalid PII rule pattern {v!r}: {exc}") from exc
        return v


class TokenizationConfig(BaseModel):
    extra_rules: list[PiiRuleConfig] = Field(default_factory=list)


class ServerConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 8000


class ModelConfig(BaseModel):
    """Which tool-definition dialect the language model expects."""

    provider_format: str = "generic"  # openai | anthropic | generic


class HarnessConfig(BaseModel):
    """Top-level harness configuration (harness.yaml)."""

    sandbox: SandboxConfig = Field(default_factory=SandboxConfig)
    tokenization: TokenizationConfig = Field(default_factory=TokenizationConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    model: ModelConfig = Field(default_factory=ModelConfig)
    # Importable modules exposing ``register(registry)``; loaded once at startup.
    capability_modules: list[str] = Field(default_factory=list)


# ── Loading ───────────────────────────────────────────────────────────────────


_TRUTHY = ("1", "true", "yes")


def load_config(config_path: Path) -> HarnessConfig:
    """Load harness configuration from a YAML file.

    Args:
        config_path: Path to the YAML config file.

    Returns:
        Validated HarnessConfig with environment overrides applied.

    Raises:
        FileNotFoundError: If the config file doesn't exist.
        ValueError: If config validation fails.
    """
    if not config_path.exists():
        raise FileNotFoundError(f"Harness config not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    config = HarnessConfig(**raw)
    apply_env_overrides(config)

    logger.info(
        "Loaded harness config from %s (timeout=%ss, memory=%dMB, %d capability module(s))",
        config_path,
        config.sandbox.timeout_seconds,
        config.sandbox.memory_limit_mb,
        len(config.capability_modules),
    )
    return config


def apply_env_overrides(config: HarnessConfig) -> HarnessConfig:
    """Apply ``HARNESS_*`` environment overrides in place."""
    sandbox = config.sandbox

    timeout = os.environ.get("HARNESS_SANDBOX_TIMEOUT")
    if timeout:
        sandbox.timeout_seconds = float(timeout)

    memory = os.environ.get("HARNESS_SANDBOX_MEMORY_MB")
    if memory:
        sandbox.memory_limit_mb = int(memory)

    cpu = os.environ.get("HARNESS_SANDBOX_CPU_SECONDS")
    if cpu:
        sandbox.cpu_limit_seconds = int(cpu)

    skills_root = os.environ.get("HARNESS_SKILLS_ROOT")
    if skills_root:
        sandbox.skills_root = skills_root

    workspace_root = os.environ.get("HARNESS_WORKSPACE_ROOT")
    if workspace_root:
        sandbox.workspace_root = workspace_root

    namespaces = os.environ.get("HARNESS_NAMESPACES_ENABLED")
    if namespaces is not None:
        sandbox.namespaces_enabled = namespaces.lower() in _TRUTHY

    return config
