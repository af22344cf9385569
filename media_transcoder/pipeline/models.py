"""Data carried across the pipeline boundary: inputs, stages, job specs."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any, Callable, FrozenSet, Iterable, Mapping, Optional, Tuple, Union

from media_transcoder.core.exceptions import DependencyError, ValidationError

LibraryResult = Union[bytes, Mapping[str, bytes]]

DEFAULT_LIBRARY_ERRORS: Tuple[type, ...] = (OSError, ValueError)


@dataclass(frozen=True)
class InputFile:
    """One uploaded buffer, staged into the workspace as ``name``."""

    name: str
    data: bytes
    mime_type: Optional[str] = None
    filename: Optional[str] = None

    @property
    def declared_name(self) -> str:
        return self.filename or self.name


@dataclass(frozen=True)
class OutputSpec:
    name: str
    content_type: Optional[str] = None


@dataclass(frozen=True)
class AllowList:
    """Per-endpoint file type allow-list.

    A file passes when its extension or its declared MIME type is listed.
    Extensions are stored lower-case without the leading dot.
    """

    extensions: FrozenSet[str] = frozenset()
    mime_types: FrozenSet[str] = frozenset()

    @classmethod
    def of(cls, extensions: Iterable[str] = (), mime_types: Iterable[str] = ()) -> "AllowList":
        return cls(
            extensions=frozenset(e.lower().lstrip(".") for e in extensions),
            mime_types=frozenset(m.lower() for m in mime_types),
        )

    def permits(self, filename: str, mime_type: Optional[str]) -> bool:
        ext = os.path.splitext(filename)[1].lower().lstrip(".")
        if ext and ext in self.extensions:
            return True
        if mime_type and mime_type.split(";")[0].strip().lower() in self.mime_types:
            return True
        return False


class Stage:
    """One unit of work reading and producing named workspace files."""

    name: str

    @property
    def reads(self) -> Tuple[str, ...]:
        raise NotImplementedError

    @property
    def produces(self) -> Tuple[str, ...]:
        raise NotImplementedError


@dataclass(frozen=True)
class ExternalTool(Stage):
    """Run ``argv`` as a subprocess with the workspace as working directory.

    File names in ``argv`` are relative to the workspace.
    """

    name: str
    argv: Tuple[str, ...]
    inputs: Tuple[str, ...]
    outputs: Tuple[str, ...]
    timeout: Optional[float] = None

    @property
    def reads(self) -> Tuple[str, ...]:
        return tuple(self.inputs)

    @property
    def produces(self) -> Tuple[str, ...]:
        return tuple(self.outputs)


@dataclass(frozen=True)
class LibraryCall(Stage):
    """In-process call: ``func(*input_buffers, **options)``.

    Returns bytes when the stage has exactly one output, otherwise a mapping of
    output name to bytes. Exceptions listed in ``errors`` are library failures
    on the data; anything else propagates as a programming error.
    """

    name: str
    func: Callable[..., LibraryResult]
    inputs: Tuple[str, ...]
    outputs: Tuple[str, ...]
    options: Mapping[str, Any] = field(default_factory=dict)
    errors: Tuple[type, ...] = DEFAULT_LIBRARY_ERRORS

    @property
    def reads(self) -> Tuple[str, ...]:
        return tuple(self.inputs)

    @property
    def produces(self) -> Tuple[str, ...]:
        return tuple(self.outputs)


@dataclass(frozen=True)
class Alternatives(Stage):
    """Ordered fallback: try each choice until one succeeds.

    Only tool-level failures fall through to the next choice.
    """

    name: str
    choices: Tuple[Stage, ...]

    @property
    def reads(self) -> Tuple[str, ...]:
        seen = []
        for choice in self.choices:
            for item in choice.reads:
                if item not in seen:
                    seen.append(item)
        return tuple(seen)

    @property
    def produces(self) -> Tuple[str, ...]:
        return self.choices[0].produces if self.choices else ()


@dataclass(frozen=True)
class JobSpec:
    inputs: Tuple[InputFile, ...]
    stages: Tuple[Stage, ...]
    outputs: Tuple[OutputSpec, ...]
    allowed: Optional[AllowList] = None
    label: str = "job"

    @property
    def output_names(self) -> Tuple[str, ...]:
        return tuple(o.name for o in self.outputs)

    def validate(self) -> None:
        """Check the stage graph before anything touches the filesystem.

        Raises:
            ValidationError: For malformed specs.
            DependencyError: When a stage or expected output references a file
                that no input or earlier stage provides.
        """
        if not self.outputs:
            raise ValidationError(f"Job '{self.label}' declares no outputs.")

        available = set()
        for item in self.inputs:
            if item.name in available:
                raise ValidationError(f"Duplicate input name '{item.name}'.")
            available.add(item.name)

        for stage in self.stages:
            _check_stage(stage, available)
            available.update(stage.produces)

        for output in self.outputs:
            if output.name not in available:
                raise DependencyError(
                    f"Expected output '{output.name}' is not produced by any stage."
                )


def _check_stage(stage: Stage, available: set) -> None:
    if isinstance(stage, Alternatives):
        if not stage.choices:
            raise ValidationError(f"Stage '{stage.name}' has no alternatives.", stage=stage.name)
        expected = set(stage.choices[0].produces)
        for choice in stage.choices:
            if set(choice.produces) != expected:
                raise ValidationError(
                    f"Alternatives in stage '{stage.name}' must produce the same outputs.",
                    stage=stage.name,
                )
            _check_stage(choice, available)
        return

    if isinstance(stage, ExternalTool) and not stage.argv:
        raise ValidationError(f"Stage '{stage.name}' has an empty command.", stage=stage.name)
    if not stage.produces:
        raise ValidationError(f"Stage '{stage.name}' declares no outputs.", stage=stage.name)

    for name in stage.reads:
        if name not in available:
            raise DependencyError.missing_input(stage.name, name)
