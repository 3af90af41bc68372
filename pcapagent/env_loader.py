from __future__ import annotations

import logging
import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Tuple

from pcapagent.config_loader import ENV_OVERRIDES

LOGGER = logging.getLogger(__name__)

ENV_PREFIX = "PCAPAGENT_"
RUNTIME_KEYS = frozenset(
    {
        "PCAPAGENT_CONFIG",
        "PCAPAGENT_LOG_LEVEL",
        "PCAPAGENT_EXTERNAL_LIB_LOG_LEVEL",
        "PCAPAGENT_ACCESS_LOG_LEVEL",
    }
)
KNOWN_KEYS = frozenset(ENV_OVERRIDES) | RUNTIME_KEYS


@dataclass
class EnvFileReport:
    """What a runtime env file contributed to the process environment."""

    path: Path
    applied: List[str] = field(default_factory=list)
    kept: List[str] = field(default_factory=list)
    ignored: List[str] = field(default_factory=list)
    malformed: List[int] = field(default_factory=list)

    @property
    def loaded(self) -> int:
        return len(self.applied)


def _split_assignment(line: str) -> Tuple[str, str]:
    text = line.strip()
    if text.startswith("export "):
        text = text[len("export ") :]
    key, sep, raw_value = text.partition("=")
    key = key.strip()
    if not sep or not key:
        raise ValueError("expected KEY=VALUE")
    tokens = shlex.split(raw_value, comments=True)
    return key, " ".join(tokens)


def read_env_file(path: Path) -> Tuple[Dict[str, str], List[int]]:
    """Parse ``KEY=VALUE`` lines; shell quoting and trailing comments are honoured. Returns values and bad line numbers."""
    values: Dict[str, str] = {}
    malformed: List[int] = []
    for lineno, raw_line in enumerate(path.read_text(encoding="utf-8").splitlines(), start=1):
        if not raw_line.strip() or raw_line.lstrip().startswith("#"):
            continue
        try:
            key, value = _split_assignment(raw_line)
        except ValueError:
            malformed.append(lineno)
            continue
        values[key] = value
    return values, malformed


def load_env_file(path: Path, override: bool = False) -> EnvFileReport:
    """
    Export the agent's settings from a runtime env file.

    Only keys the agent reads are exported; anything else is reported and left
    out of the environment. Variables already set win unless ``override`` is set.
    """
    report = EnvFileReport(path=path)
    if not path.exists():
        LOGGER.debug("Env file not present path=%s", path, extra={"category": "CONFIG"})
        return report

    values, report.malformed = read_env_file(path)
    for key, value in values.items():
        if key not in KNOWN_KEYS:
            report.ignored.append(key)
            continue
        if not override and key in os.environ:
            report.kept.append(key)
            continue
        os.environ[key] = value
        report.applied.append(key)

    if report.malformed:
        LOGGER.warning(
            "Skipped malformed env lines path=%s lines=%s",
            path,
            report.malformed,
            extra={"category": "CONFIG"},
        )
    if report.ignored:
        unknown_agent_keys = [k for k in report.ignored if k.startswith(ENV_PREFIX)]
        LOGGER.warning(
            "Ignored env keys the agent does not read path=%s keys=%s unknown_agent_keys=%s",
            path,
            sorted(report.ignored),
            sorted(unknown_agent_keys),
            extra={"category": "CONFIG"},
        )
    LOGGER.info(
        "Loaded env file path=%s applied=%s kept=%s",
        path,
        sorted(report.applied),
        sorted(report.kept),
        extra={"category": "CONFIG"},
    )
    return report
