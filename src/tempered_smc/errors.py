"""Exceptions raised by the tempered SMC sampler."""

from __future__ import annotations

from typing import Optional, Tuple


class SMCError(RuntimeError):
    """Base class for sampler failures."""


class ConfigurationError(SMCError, ValueError):
    """Invalid sampler options, rejected before any sampling happens."""


class DegenerateWeightsError(SMCError):
    """All importance weights vanished; the ESS is undefined."""


class TemperingError(SMCError):
    """The schedule solver could not find the next tempering exponent."""

    def __init__(
        self,
        message: str,
        bracket: Optional[Tuple[float, float]] = None,
        stage: Optional[int] = None,
    ):
        details = []
        if bracket is not None:
            details.append(f"bracket=[{bracket[0]:.6g}, {bracket[1]:.6g}]")
        if stage is not None:
            details.append(f"stage={stage}")
        if details:
            message = f"{message} ({', '.join(details)})"
        super().__init__(message)
        self.bracket = bracket
        self.stage = stage


__all__ = [name for name in globals() if not name.startswith("_")]
