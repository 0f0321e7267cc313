"""Post-commit side effects.

Handlers describe their downstream work (invoice, inventory movement,
accounting event, lease-to-own sweep) as an ordered list of
PostCommitEffect. The orchestrator runs them after the transition has
committed, each in its own transaction. A failing effect is logged with
enough context to reprocess it by hand and never reverts the transition or
fails the notification.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from motolease.database import SessionFactory, session_scope

logger = logging.getLogger(__name__)

EffectAction = Callable[[AsyncSession], Awaitable[Any]]


@dataclass(frozen=True)
class PostCommitEffect:
    """One unit of best-effort downstream work."""

    name: str
    action: EffectAction
    context: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class EffectReport:
    """Outcome of one effect."""

    name: str
    succeeded: bool
    error: str | None = None


class SideEffectOrchestrator:
    """Runs post-commit effects with failure isolation."""

    def __init__(self, session_factory: SessionFactory):
        self.session_factory = session_factory

    async def run(self, effects: Sequence[PostCommitEffect]) -> list[EffectReport]:
        """Run effects in order; every effect runs even if an earlier one failed."""
        reports: list[EffectReport] = []

        for effect in effects:
            try:
                async with session_scope(self.session_factory) as session:
                    await effect.action(session)
            except Exception as e:
                logger.exception(
                    "Side effect %s failed; reconcile out-of-band. context=%s",
                    effect.name,
                    effect.context,
                )
                reports.append(EffectReport(name=effect.name, succeeded=False, error=str(e)))
            else:
                reports.append(EffectReport(name=effect.name, succeeded=True))

        return reports
