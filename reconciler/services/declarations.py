from __future__ import annotations

from pathlib import Path
from typing import Dict, Iterator, List

from reconciler.errors import DeclarationStoreMissing
from reconciler.logger import get_logger
from reconciler.schemas.declarations import ServiceDeclaration
from reconciler.services.storage import parse_env_lines

_logger = get_logger("services.declarations")


def _iter_pairs(raw: str) -> Iterator[tuple[int, str, str]]:
    for lineno, line in enumerate(raw.splitlines(), start=1):
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        if "=" not in stripped:
            _logger.warning(
                "declarations.skip",
                "Ignored line without key=value",
                line=lineno,
            )
            continue
        key, value = stripped.split("=", 1)
        key = key.strip()
        if key:
            yield lineno, key, value.strip()


def parse_declarations(raw: str) -> List[ServiceDeclaration]:
    """Parse ``service=true|false`` lines; the last occurrence of a key wins."""
    seen: Dict[str, ServiceDeclaration] = {}
    for lineno, name, value in _iter_pairs(raw):
        if name in seen:
            _logger.warning(
                "declarations.duplicate",
                "Service declared more than once; last value wins",
                service=name,
                line=lineno,
            )
            del seen[name]
        seen[name] = ServiceDeclaration(name=name, enabled=value == "true")
    return list(seen.values())


def load_declarations(path: Path) -> List[ServiceDeclaration]:
    if not path.is_file():
        raise DeclarationStoreMissing(str(path))
    declarations = parse_declarations(path.read_text(encoding="utf-8"))
    _logger.debug(
        "declarations.load",
        "Loaded service declarations",
        path=str(path),
        services=len(declarations),
        enabled=sum(1 for item in declarations if item.enabled),
    )
    return declarations


def load_env_file(path: Path) -> Dict[str, str]:
    if not path.is_file():
        return {}
    return parse_env_lines(path.read_text(encoding="utf-8"))
