"""Load a desired-state stack file.

A stack file is JSON::

    {
      "stack": "bug-tracker",
      "resources": [
        {"name": "network", "kind": "Network", "config": {...}},
        {"name": "database", "kind": "Database",
         "config": {"master_password": {"$secret": "DB_PASSWORD"}, ...}}
      ]
    }

``resources`` may also be an object keyed by resource name. String values may
use ``${VAR}`` or ``${VAR:-default}``; variables come from the environment,
after a ``.env`` file beside the stack file has been loaded.
"""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

from dotenv import load_dotenv
from pydantic import ValidationError

from .errors import DuplicateNameError, InvalidDeclarationError
from .models import SECRET_KEY, ResourceDeclaration

logger = logging.getLogger(__name__)

_VAR_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}")


class _JsonObject(dict):
    """Decoded JSON object that remembers keys that appeared more than once."""

    duplicates: list[str]


def _object_pairs(pairs: list[tuple[str, Any]]) -> _JsonObject:
    obj = _JsonObject()
    obj.duplicates = []
    for key, value in pairs:
        if key in obj:
            obj.duplicates.append(key)
        obj[key] = value
    return obj


def _reject_duplicate_keys(value: Any, path: str) -> None:
    if isinstance(value, _JsonObject):
        if value.duplicates:
            raise InvalidDeclarationError(f"Duplicate key {value.duplicates[0]!r} in {path}")
        for key, item in value.items():
            _reject_duplicate_keys(item, f"{path}.{key}")
    elif isinstance(value, list):
        for index, item in enumerate(value):
            _reject_duplicate_keys(item, f"{path}[{index}]")


def substitute_variables(value: Any, env: Mapping[str, str]) -> Any:
    """Expand ``${VAR}`` / ``${VAR:-default}`` in every string of *value*.

    Raises:
        InvalidDeclarationError: If a variable without a default is unset.
    """
    if isinstance(value, str):
        def _expand(match: re.Match[str]) -> str:
            name, default = match.group(1), match.group(2)
            resolved = env.get(name)
            if resolved is None or (resolved == "" and default is not None):
                if default is None:
                    raise InvalidDeclarationError(f"Environment variable {name} is not set and has no default")
                return default
            return resolved

        return _VAR_RE.sub(_expand, value)
    if isinstance(value, dict):
        return {key: substitute_variables(item, env) for key, item in value.items()}
    if isinstance(value, list):
        return [substitute_variables(item, env) for item in value]
    return value


def _secret_names(value: Any) -> set[str]:
    if isinstance(value, dict):
        if set(value) == {SECRET_KEY} and isinstance(value[SECRET_KEY], str):
            return {value[SECRET_KEY].strip()}
        names: set[str] = set()
        for item in value.values():
            names |= _secret_names(item)
        return names
    if isinstance(value, list):
        names = set()
        for item in value:
            names |= _secret_names(item)
        return names
    return set()


@dataclass(frozen=True)
class StackFile:
    stack: str | None
    declarations: list[ResourceDeclaration]
    secrets: dict[str, str] = field(default_factory=dict, repr=False)
    missing_secrets: list[str] = field(default_factory=list)


def _declarations(resources: Any) -> list[dict[str, Any]]:
    if isinstance(resources, list):
        raw = list(resources)
    elif isinstance(resources, dict):
        if isinstance(resources, _JsonObject) and resources.duplicates:
            raise DuplicateNameError(resources.duplicates[0])
        raw = []
        for name, body in resources.items():
            if not isinstance(body, dict):
                raise InvalidDeclarationError(f"Resource {name!r} must be a JSON object")
            raw.append({"name": name, **body})
    else:
        raise InvalidDeclarationError("'resources' must be a list or an object keyed by resource name")

    seen: set[str] = set()
    for item in raw:
        if not isinstance(item, dict):
            raise InvalidDeclarationError(f"Resource declarations must be JSON objects, got {item!r}")
        name = str(item.get("name", "")).strip()
        if name in seen:
            raise DuplicateNameError(name)
        seen.add(name)
    return raw


def parse_stack_document(text: str, *, env: Mapping[str, str], source: str = "<string>") -> StackFile:
    """Parse stack-file JSON *text* with variables resolved from *env*."""
    try:
        document = json.loads(text, object_pairs_hook=_object_pairs)
    except json.JSONDecodeError as exc:
        raise InvalidDeclarationError(f"{source} is not valid JSON ({exc.msg} at line {exc.lineno})") from exc
    if not isinstance(document, dict):
        raise InvalidDeclarationError(f"{source} must contain a JSON object")
    if "resources" not in document:
        raise InvalidDeclarationError(f"{source} has no 'resources'")

    raw = _declarations(document["resources"])
    _reject_duplicate_keys(document["resources"], "resources")
    raw = substitute_variables(raw, env)

    stack = document.get("stack")
    if stack is not None:
        stack = substitute_variables(str(stack), env).strip() or None

    try:
        declarations = [ResourceDeclaration.model_validate(item) for item in raw]
    except ValidationError as exc:
        raise InvalidDeclarationError(f"{source}: invalid resource declaration: {exc}") from exc
    secrets: dict[str, str] = {}
    missing: list[str] = []
    for name in sorted(_secret_names(raw)):
        if name in env:
            secrets[name] = env[name]
        else:
            missing.append(name)
    return StackFile(stack=stack, declarations=declarations, secrets=secrets, missing_secrets=missing)


def load_stack_file(
    path: Path,
    *,
    env: Mapping[str, str] | None = None,
    dotenv_path: Path | None = None,
) -> StackFile:
    """Read and parse a stack file.

    Args:
        path: JSON stack file.
        env: Variables for substitution and secrets. Defaults to the process
            environment after loading ``dotenv_path`` (or ``.env`` beside the
            stack file) without overriding variables already set.
        dotenv_path: Explicit ``.env`` file.

    Raises:
        FileNotFoundError: If *path* does not exist.
        InvalidDeclarationError: On malformed JSON or declarations.
        DuplicateNameError: If two resources share a name.
    """
    path = Path(path)
    if not path.is_file():
        raise FileNotFoundError(f"Stack file does not exist: {path}")
    if env is None:
        env_path = dotenv_path if dotenv_path is not None else path.parent / ".env"
        if env_path.is_file():
            load_dotenv(env_path)
            logger.debug("Loaded environment from %s", env_path)
        env = os.environ
    stack_file = parse_stack_document(path.read_text(encoding="utf-8"), env=env, source=str(path))
    if stack_file.missing_secrets:
        logger.warning("Secrets not found in environment: %s", ", ".join(stack_file.missing_secrets))
    logger.info("Loaded %d resource declarations from %s", len(stack_file.declarations), path)
    return stack_file
