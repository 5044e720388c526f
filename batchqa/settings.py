from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass


def _split_csv(raw: str) -> list[str]:
    return [x.strip() for x in raw.split(",") if x.strip()]


def _roles(raw: str) -> frozenset[str]:
    return frozenset(x.upper() for x in _split_csv(raw))


@dataclass(frozen=True)
class WorkflowSettings:
    maker_roles: frozenset[str]
    checker_roles: frozenset[str]
    reviewer_role: str
    log_level: str
    cors_allow_origins: list[str]

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "WorkflowSettings":
        env = os.environ if environ is None else environ
        return cls(
            maker_roles=_roles(env.get("BQA_MAKER_ROLES", "MAKER,ADMIN")),
            checker_roles=_roles(env.get("BQA_CHECKER_ROLES", "CHECKER,ADMIN")),
            reviewer_role=env.get("BQA_REVIEWER_ROLE", "CHECKER").strip().upper() or "CHECKER",
            log_level=env.get("BQA_LOG_LEVEL", "INFO").strip().upper() or "INFO",
            cors_allow_origins=_split_csv(
                env.get("CORS_ALLOW_ORIGINS", "http://127.0.0.1:5173,http://localhost:5173")
            ),
        )


def configure_logging(level: str) -> None:
    resolved = logging.getLevelName(level.upper())
    if not isinstance(resolved, int):
        resolved = logging.INFO
    logging.getLogger("batchqa").setLevel(resolved)
