"""Loading and lookup of syntheme definitions.

A syntheme is a named, immutable template of transcoding engine arguments.
Definitions live in the ``synthemes`` directory either as ``<name>.json`` or
as ``<name>/syntheme.json``; the directory form lets a template reference
bundled assets (overlays, LUTs, fonts) through the ``{assets}`` placeholder.

The registry is built once at start-up and exposes no mutation path, so it
can be shared by reference between concurrently running render jobs.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

from ..errors import LoadError, SynthemeNotFound
from .media_types import SUPPORTED_TYPES, matches_any, normalize_content_type
from .naming import slugify


LOGGER = logging.getLogger(__name__)

DEFINITION_FILENAME = "syntheme.json"

INPUT_PLACEHOLDER = "{input}"
OUTPUT_PLACEHOLDER = "{output}"
ASSETS_PLACEHOLDER = "{assets}"
_KNOWN_PLACEHOLDERS = {INPUT_PLACEHOLDER, OUTPUT_PLACEHOLDER, ASSETS_PLACEHOLDER}
_PLACEHOLDER_PATTERN = re.compile(r"\{[^{}]*\}")


class SynthemeDefinitionError(ValueError):
    """Raised for a single malformed definition; never aborts a full load."""


@dataclass(frozen=True)
class Syntheme:
    """Immutable description of how an asset is transformed by the engine."""

    name: str
    args: Tuple[str, ...]
    description: str = ""
    accepts: Tuple[str, ...] = ()
    output_extension: str = ".mp4"
    output_content_type: str = "video/mp4"
    timeout_seconds: Optional[float] = None
    source: Optional[Path] = field(default=None, compare=False)
    assets_dir: Optional[Path] = field(default=None, compare=False)

    def accepts_content_type(self, content_type: str) -> bool:
        return matches_any(content_type, self.accepts)

    def build_arguments(self, input_path: Path, output_path: Path) -> List[str]:
        """Return the engine argument list with placeholders substituted."""

        substitutions = {
            INPUT_PLACEHOLDER: str(input_path),
            OUTPUT_PLACEHOLDER: str(output_path),
            ASSETS_PLACEHOLDER: str(self.assets_dir or ""),
        }
        tokens = list(self.args)
        if not any(INPUT_PLACEHOLDER in token for token in tokens):
            tokens = ["-i", INPUT_PLACEHOLDER, *tokens]
        if not any(OUTPUT_PLACEHOLDER in token for token in tokens):
            tokens.append(OUTPUT_PLACEHOLDER)

        arguments: List[str] = []
        for token in tokens:
            for placeholder, replacement in substitutions.items():
                token = token.replace(placeholder, replacement)
            arguments.append(token)
        return arguments

    def describe(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "accepts": list(self.accepts),
            "output_content_type": self.output_content_type,
            "output_extension": self.output_extension,
        }


def _string_tuple(value: Any, *, label: str) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str) or not isinstance(value, Sequence):
        raise SynthemeDefinitionError(f"'{label}' must be a list of strings")
    items: List[str] = []
    for item in value:
        if not isinstance(item, str):
            raise SynthemeDefinitionError(f"'{label}' must only contain strings")
        items.append(item)
    return tuple(items)


def parse_definition(
    payload: Mapping[str, Any],
    *,
    default_name: str,
    source: Optional[Path] = None,
    assets_dir: Optional[Path] = None,
) -> Syntheme:
    """Validate a decoded JSON definition and return the :class:`Syntheme`."""

    if not isinstance(payload, Mapping):
        raise SynthemeDefinitionError("definition must be a JSON object")

    raw_name = payload.get("name", default_name)
    if not isinstance(raw_name, str) or not raw_name.strip():
        raise SynthemeDefinitionError("'name' must be a non-empty string")
    name = raw_name.strip()
    if slugify(name) != name:
        raise SynthemeDefinitionError(
            f"'name' must be lower-case letters, digits and dashes (got '{name}')"
        )

    args = _string_tuple(payload.get("args"), label="args")
    if not args:
        raise SynthemeDefinitionError("'args' must contain at least one argument")
    for token in args:
        for placeholder in _PLACEHOLDER_PATTERN.findall(token):
            if placeholder not in _KNOWN_PLACEHOLDERS:
                raise SynthemeDefinitionError(f"unknown placeholder {placeholder} in args")
    if assets_dir is None and any(ASSETS_PLACEHOLDER in token for token in args):
        raise SynthemeDefinitionError(
            "{assets} is only available to directory-based synthemes"
        )

    accepts = tuple(pattern.lower() for pattern in _string_tuple(payload.get("accepts"), label="accepts"))
    for pattern in accepts:
        if not any(matches_any(candidate, (pattern,)) for candidate in SUPPORTED_TYPES):
            raise SynthemeDefinitionError(f"'accepts' pattern '{pattern}' matches no supported type")

    description = payload.get("description", "")
    if not isinstance(description, str):
        raise SynthemeDefinitionError("'description' must be a string")

    output_extension = payload.get("output_extension", ".mp4")
    if not isinstance(output_extension, str) or not re.fullmatch(r"\.?[A-Za-z0-9]{1,8}", output_extension):
        raise SynthemeDefinitionError("'output_extension' must be a short alphanumeric suffix")
    if not output_extension.startswith("."):
        output_extension = f".{output_extension}"

    output_content_type = normalize_content_type(payload.get("output_content_type", "video/mp4"))
    if "/" not in output_content_type:
        raise SynthemeDefinitionError("'output_content_type' must be a media type")

    timeout_seconds = payload.get("timeout_seconds")
    if timeout_seconds is not None:
        if isinstance(timeout_seconds, bool) or not isinstance(timeout_seconds, (int, float)):
            raise SynthemeDefinitionError("'timeout_seconds' must be a number")
        if timeout_seconds <= 0:
            raise SynthemeDefinitionError("'timeout_seconds' must be positive")
        timeout_seconds = float(timeout_seconds)

    return Syntheme(
        name=name,
        args=args,
        description=description.strip(),
        accepts=accepts,
        output_extension=output_extension.lower(),
        output_content_type=output_content_type,
        timeout_seconds=timeout_seconds,
        source=source,
        assets_dir=assets_dir,
    )


def _iter_definition_files(directory: Path) -> Iterator[Tuple[Path, str, Optional[Path]]]:
    for entry in sorted(directory.iterdir()):
        if entry.name.startswith("."):
            continue
        if entry.is_dir():
            definition = entry / DEFINITION_FILENAME
            if definition.is_file():
                yield definition, entry.name, entry.resolve()
            else:
                LOGGER.debug("Ignoring syntheme directory without %s: %s", DEFINITION_FILENAME, entry)
        elif entry.suffix.lower() == ".json":
            yield entry, entry.stem, None


class SynthemeRegistry:
    """Read-only index of the synthemes loaded at start-up."""

    def __init__(self, synthemes: Sequence[Syntheme]) -> None:
        index: Dict[str, Syntheme] = {}
        for syntheme in synthemes:
            if syntheme.name in index:
                raise ValueError(f"Duplicate syntheme name '{syntheme.name}'")
            index[syntheme.name] = syntheme
        self._index: Mapping[str, Syntheme] = MappingProxyType(index)
        self._names: Tuple[str, ...] = tuple(sorted(index))

    @classmethod
    def load(cls, directory: Path) -> "SynthemeRegistry":
        """Load every definition under *directory*.

        Malformed definitions are skipped with a warning. A missing or
        unreadable directory, or a load that yields no synthemes at all,
        raises :class:`LoadError`.
        """

        directory = Path(directory)
        try:
            candidates = list(_iter_definition_files(directory))
        except OSError as error:
            raise LoadError(f"Unable to read synthemes directory '{directory}': {error}") from error

        loaded: List[Syntheme] = []
        seen: Dict[str, Path] = {}
        skipped = 0
        for path, default_name, assets_dir in candidates:
            try:
                payload = json.loads(path.read_text(encoding="utf-8"))
                syntheme = parse_definition(
                    payload,
                    default_name=default_name,
                    source=path,
                    assets_dir=assets_dir,
                )
            except (OSError, UnicodeDecodeError, json.JSONDecodeError, SynthemeDefinitionError) as error:
                skipped += 1
                LOGGER.warning("Skipping malformed syntheme definition %s: %s", path, error)
                continue
            if syntheme.name in seen:
                skipped += 1
                LOGGER.warning(
                    "Skipping syntheme '%s' from %s; already defined by %s",
                    syntheme.name,
                    path,
                    seen[syntheme.name],
                )
                continue
            seen[syntheme.name] = path
            loaded.append(syntheme)

        if not loaded:
            raise LoadError(
                f"No usable synthemes found in '{directory}' ({skipped} skipped)"
            )

        LOGGER.info("Loaded %s syntheme(s) from %s (%s skipped)", len(loaded), directory, skipped)
        return cls(loaded)

    def get(self, name: str) -> Syntheme:
        try:
            return self._index[name]
        except KeyError:
            raise SynthemeNotFound(name) from None

    def list(self) -> Tuple[str, ...]:
        return self._names

    def __contains__(self, name: object) -> bool:
        return name in self._index

    def __iter__(self) -> Iterator[Syntheme]:
        return (self._index[name] for name in self._names)

    def __len__(self) -> int:
        return len(self._names)


__all__ = [
    "ASSETS_PLACEHOLDER",
    "DEFINITION_FILENAME",
    "INPUT_PLACEHOLDER",
    "OUTPUT_PLACEHOLDER",
    "Syntheme",
    "SynthemeDefinitionError",
    "SynthemeRegistry",
    "parse_definition",
]
