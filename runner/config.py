"""Layered runner configuration.

The broker may attach a ``set`` patch to any poll response. Patches are merged
over the current values (never replacing unrelated keys) and validated through
``RunnerConfig`` so a bad patch cannot leave the store in an invalid state.
"""
from __future__ import annotations

import re
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from .bootstrap import Settings

_CAMEL_RE = re.compile(r"(?<!^)(?=[A-Z])")


def _snake(key: str) -> str:
    return _CAMEL_RE.sub("_", key).lower()


class RunnerConfig(BaseModel):
    """Broker-patchable runner settings; unknown broker keys are kept as extras."""
    model_config = ConfigDict(extra="allow", frozen=True)

    concurrency: int = Field(1, ge=1)
    check_interval: float = Field(5.0, gt=0)


class ConfigManager:
    """Owns the mutable configuration store for the process lifetime."""

    def __init__(self, runner: RunnerConfig | None = None, **sections: dict[str, Any]) -> None:
        self._runner = runner or RunnerConfig()
        self._sections: dict[str, dict[str, Any]] = {k: dict(v) for k, v in sections.items()}

    @classmethod
    def from_settings(cls, settings: Settings) -> "ConfigManager":
        return cls(RunnerConfig(concurrency=settings.concurrency, check_interval=settings.check_interval))

    @property
    def runner(self) -> RunnerConfig:
        return self._runner

    def load(self) -> dict[str, Any]:
        """Return a snapshot of the whole store."""
        return {"runner": self._runner.model_dump(), **{k: dict(v) for k, v in self._sections.items()}}

    def patch(self, patch: dict[str, Any]) -> None:
        """Merge a patch of the form ``{"runner": {...}, "<section>": {...}}``.

        Raises ValueError (from pydantic) when the merged runner section is invalid;
        the store is left untouched in that case.
        """
        runner_patch = patch.get("runner")
        if runner_patch:
            merged = {**self._runner.model_dump(), **{_snake(k): v for k, v in runner_patch.items()}}
            self._runner = RunnerConfig.model_validate(merged)
        for section, values in patch.items():
            if section == "runner" or not isinstance(values, dict):
                continue
            self._sections.setdefault(section, {}).update(values)


__all__ = ["RunnerConfig", "ConfigManager"]
