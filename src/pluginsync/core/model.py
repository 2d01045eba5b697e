"""
Typed entities for plugin registration and the normalization helpers used
whenever two of them are compared.

Store records and snapshot documents are loose property bags; they are
converted into these dataclasses at the boundary (see `desired` and
`observed`) so the diff engine never handles untyped maps.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .enums import ImageType, Mode, Stage, State, WebResourceType

_NO_ENTITY = {"", "none"}


# =========================
# Normalization
# =========================

def norm_text(value: Any) -> str:
    """None and empty collapse to ''; other values are stringified and trimmed."""
    if value is None:
        return ""
    return str(value).strip()


def norm_guid(value: Any) -> str:
    """Lowercase, brace-free GUID text ('' for missing)."""
    return norm_text(value).strip("{}").lower()


def norm_type_name(value: Any) -> str:
    """Plugin type names compare case-insensitively, like messages."""
    return norm_text(value).lower()


def norm_entity(value: Any) -> str:
    """Logical entity name; '' and 'none' both mean 'no filter'."""
    text = norm_text(value).lower()
    return "" if text in _NO_ENTITY else text


def norm_attributes(value: Any) -> Tuple[str, ...]:
    """Attribute set as a sorted tuple; accepts a list or a comma separated string."""
    if value is None:
        return ()
    if isinstance(value, str):
        items = value.split(",")
    else:
        items = [str(v) for v in value]
    return tuple(sorted({i.strip().lower() for i in items if i and i.strip()}))


def to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


# =========================
# Run-as user
# =========================

@dataclass(frozen=True)
class RunAsUser:
    """Impersonation target. No application_id and no user_id means the calling user."""

    application_id: str = ""
    user_id: str = ""

    @property
    def is_calling_user(self) -> bool:
        return not self.application_id and not self.user_id

    @classmethod
    def calling_user(cls) -> "RunAsUser":
        return cls()

    @classmethod
    def parse(cls, value: Any) -> "RunAsUser":
        if value in (None, "", {}):
            return cls()
        if isinstance(value, str):
            return cls(user_id=norm_guid(value))
        if isinstance(value, dict):
            return cls(
                application_id=norm_guid(value.get("applicationId")),
                user_id=norm_guid(value.get("userId")),
            )
        raise ValueError(f"Invalid runAsUser: {value!r}")

    def to_dict(self) -> Optional[Dict[str, str]]:
        if self.is_calling_user:
            return None
        if self.application_id:
            return {"applicationId": self.application_id}
        return {"userId": self.user_id}

    def describe(self) -> str:
        if self.application_id:
            return f"application {self.application_id}"
        if self.user_id:
            return f"user {self.user_id}"
        return "calling user"


# =========================
# Entities
# =========================

@dataclass(frozen=True)
class PluginAssembly:
    id: str
    name: str
    version: str = ""


@dataclass(frozen=True)
class PluginType:
    id: str
    name: str
    assembly_id: str = ""


@dataclass(frozen=True)
class StepImage:
    name: str
    entity_alias: str = ""
    image_type: ImageType = ImageType.PRE_IMAGE
    message_property_name: str = "Id"
    attributes: Tuple[str, ...] = ()
    id: str = ""

    def comparable(self) -> Tuple[Any, ...]:
        return (
            norm_text(self.entity_alias),
            norm_text(self.message_property_name) or "Id",
            self.image_type,
            norm_attributes(self.attributes),
        )

    def differences(self, other: "StepImage") -> List[str]:
        """Names of the fields that differ from `other`."""
        labels = ("entityAlias", "messagePropertyName", "imageType", "attributes")
        return [lbl for lbl, a, b in zip(labels, self.comparable(), other.comparable()) if a != b]


@dataclass
class PluginStep:
    name: str
    plugin_type_name: str
    message: str
    primary_entity: str = ""
    stage: Stage = Stage.POST_OPERATION
    mode: Mode = Mode.SYNCHRONOUS
    state: State = State.ENABLED
    rank: int = 1
    description: str = ""
    configuration: str = ""
    filtering_attributes: Tuple[str, ...] = ()
    async_auto_delete: bool = False
    run_as: RunAsUser = field(default_factory=RunAsUser)
    images: List[StepImage] = field(default_factory=list)
    id: str = ""
    plugin_type_id: str = ""

    # Filled for observed steps only; resolved id of the impersonated user.
    impersonating_user_id: str = ""

    def image_by_name(self) -> Dict[str, StepImage]:
        return {img.name: img for img in self.images}

    def has_pre_image(self) -> bool:
        return any(img.image_type.includes_pre for img in self.images)

    @property
    def requires_pre_image(self) -> bool:
        return norm_text(self.message).lower() in {"update", "delete"}

    @property
    def effective_async_auto_delete(self) -> bool:
        return bool(self.async_auto_delete) and self.mode is Mode.ASYNCHRONOUS

    def label(self) -> str:
        return self.name or f"{self.plugin_type_name}:{self.message}"


@dataclass(frozen=True)
class WebResource:
    name: str
    content: bytes
    resource_type: WebResourceType
    id: str = ""
