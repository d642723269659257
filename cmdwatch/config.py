from __future__ import annotations

import os
import shlex
from functools import cache
from pathlib import Path
from typing import ClassVar

import yaml
from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from cmdwatch.runner.backoff import BackoffParameters


class RunnerSettings(BaseModel):

    timeout_sec: float = Field(default=60.0, gt=0)  # watchdog deadline per run
    kill_grace_sec: float = Field(default=5.0, gt=0)  # wait after abort before SIGKILL
    verbose_args: list[str] = Field(default_factory=lambda: ["-vv"])  # appended on re-run
    default_env: dict[str, str] = Field(default_factory=dict)  # merged under descriptor env


class BackoffSettings(BaseModel):

    min_sec: float = Field(default=0.25)
    max_sec: float = Field(default=4.0)
    step: float = Field(default=2.0)

    def parameters(self) -> BackoffParameters:
        return BackoffParameters(min_sec=self.min_sec, max_sec=self.max_sec, step=self.step)


class LogSettings(BaseModel):

    level: str = Field(default="INFO")
    json_output: bool = Field(default=False, alias="json")

    model_config = ConfigDict(populate_by_name=True)


class AppConfig(BaseSettings):
    """
    Main application settings.

    Source of truth:
      1) YAML file (structured config)
      2) Flat CMDWATCH_* env overrides, merged explicitly in from_yaml().
    """

    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_prefix="",
        extra="ignore",
        case_sensitive=False,
    )

    runner: RunnerSettings = Field(default_factory=RunnerSettings)
    backoff: BackoffSettings = Field(default_factory=BackoffSettings)
    log: LogSettings = Field(default_factory=LogSettings)

    @classmethod
    def from_yaml(cls, path: Path | None = None) -> AppConfig:
        """
        Load config from YAML, then overlay flat env values.
        Search order if path is not provided:
          ./cmdwatch.yaml
          ~/.config/cmdwatch/config.yaml
        """
        candidates: list[Path] = []
        if path is not None:
            candidates.append(path)
        else:
            candidates.extend(
                [Path("cmdwatch.yaml"), Path.home() / ".config" / "cmdwatch" / "config.yaml"]
            )

        raw: dict[str, object] = {}
        for p in candidates:
            if p.exists():
                loaded = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
                if not isinstance(loaded, dict):
                    raise ValueError(f"YAML at {p} must define a mapping at the root")
                raw = loaded
                break

        cfg = cls.model_validate(raw)

        def _get_env(name: str) -> str | None:
            value = os.getenv(name)
            if value is None or value == "":
                return None
            return value

        timeout = _get_env("CMDWATCH_TIMEOUT_SEC")
        if timeout is not None:
            cfg.runner.timeout_sec = float(timeout)

        level = _get_env("CMDWATCH_LOG_LEVEL")
        if level is not None:
            cfg.log.level = level

        # shell-style list, e.g. "-vv --debug"; a lone "-" disables the re-run
        verbose = _get_env("CMDWATCH_VERBOSE_ARGS")
        if verbose is not None:
            cfg.runner.verbose_args = [] if verbose.strip() == "-" else shlex.split(verbose)

        return cfg


@cache
def get_settings() -> AppConfig:
    return AppConfig.from_yaml()


__all__ = [
    "AppConfig",
    "BackoffSettings",
    "LogSettings",
    "RunnerSettings",
    "get_settings",
]
