"""Sources of the active validation settings."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from ..models.settings import ValidationSettings


@runtime_checkable
class SettingsProvider(Protocol):
    async def get_active_settings(self) -> ValidationSettings: ...


class StaticSettingsProvider:
    """Returns a fixed settings object; replace it with :meth:`update`."""

    def __init__(self, settings: ValidationSettings | None = None) -> None:
        self._settings = settings or ValidationSettings()

    async def get_active_settings(self) -> ValidationSettings:
        return self._settings

    def update(self, settings: ValidationSettings) -> None:
        self._settings = settings


__all__ = ["SettingsProvider", "StaticSettingsProvider"]
