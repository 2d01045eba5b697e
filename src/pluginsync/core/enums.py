"""
Label/code enumerations for plugin step registration.

Values arrive either as numeric option-set codes (store records) or as text
labels (JSON snapshot). Both are parsed into one canonical enum member, and
comparisons only ever happen on members.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Type, TypeVar

E = TypeVar("E", bound="CodedEnum")


class EnumParseError(ValueError):
    """Raised when a code or label does not map to a known member."""


class CodedEnum(Enum):
    """Enum whose value is the platform code, with a display label per member."""

    @classmethod
    def _labels(cls) -> Dict[str, Any]:
        raise NotImplementedError

    @property
    def label(self) -> str:
        return self._labels()[self.name]

    @classmethod
    def from_code(cls: Type[E], code: Any) -> E:
        try:
            return cls(int(str(code).strip()))
        except (TypeError, ValueError) as exc:
            raise EnumParseError(f"Unknown {cls.__name__} code: {code!r}") from exc

    @classmethod
    def from_label(cls: Type[E], label: Any) -> E:
        wanted = _squash(label)
        for member in cls:
            if _squash(member.label) == wanted or _squash(member.name) == wanted:
                return member
        raise EnumParseError(f"Unknown {cls.__name__} label: {label!r}")

    @classmethod
    def parse(cls: Type[E], value: Any) -> E:
        """Accept a member, an int code, a numeric string or a label."""
        if isinstance(value, cls):
            return value
        if isinstance(value, bool):
            raise EnumParseError(f"Unknown {cls.__name__} value: {value!r}")
        if isinstance(value, int) or (isinstance(value, str) and value.strip().lstrip("-").isdigit()):
            return cls.from_code(value)
        return cls.from_label(value)


def _squash(value: Any) -> str:
    """Lowercase and drop separators: 'Pre-operation' == 'preoperation' == 'PRE_OPERATION'."""
    return "".join(ch for ch in str(value or "").lower() if ch.isalnum())


class Stage(CodedEnum):
    PRE_VALIDATION = 10
    PRE_OPERATION = 20
    POST_OPERATION = 40

    @classmethod
    def _labels(cls) -> Dict[str, str]:
        return {
            "PRE_VALIDATION": "Pre-validation",
            "PRE_OPERATION": "Pre-operation",
            "POST_OPERATION": "Post-operation",
        }


class Mode(CodedEnum):
    SYNCHRONOUS = 0
    ASYNCHRONOUS = 1

    @classmethod
    def _labels(cls) -> Dict[str, str]:
        return {"SYNCHRONOUS": "Synchronous", "ASYNCHRONOUS": "Asynchronous"}


class State(CodedEnum):
    ENABLED = 0
    DISABLED = 1

    @classmethod
    def _labels(cls) -> Dict[str, str]:
        return {"ENABLED": "Enabled", "DISABLED": "Disabled"}


class ImageType(CodedEnum):
    PRE_IMAGE = 0
    POST_IMAGE = 1
    BOTH = 2

    @classmethod
    def _labels(cls) -> Dict[str, str]:
        return {"PRE_IMAGE": "PreImage", "POST_IMAGE": "PostImage", "BOTH": "Both"}

    @property
    def includes_pre(self) -> bool:
        return self in (ImageType.PRE_IMAGE, ImageType.BOTH)


class WebResourceType(CodedEnum):
    HTML = 1
    JAVASCRIPT = 3

    @classmethod
    def _labels(cls) -> Dict[str, str]:
        return {"HTML": "HTML", "JAVASCRIPT": "JavaScript"}

    @classmethod
    def from_extension(cls, filename: str) -> "WebResourceType":
        lower = filename.lower()
        if lower.endswith((".html", ".htm")):
            return cls.HTML
        if lower.endswith(".js"):
            return cls.JAVASCRIPT
        raise EnumParseError(f"Unsupported web resource extension: {filename!r}")
