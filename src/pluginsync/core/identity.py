"""
Key/Identity resolution for plugin steps.

Two strategies:
  guid       the step id assigned by the snapshot is portable and compared directly
  composite  pluginTypeName|primaryEntity|message|stageLabel|rank, with type
             name and message lowercased

Looking up a key that more than one observed step answers to raises
AmbiguousIdentityError instead of picking the first candidate.
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional

from .model import PluginStep, norm_entity, norm_guid, norm_text, norm_type_name

GUID = "guid"
COMPOSITE = "composite"


class AmbiguousIdentityError(Exception):
    """More than one observed entity answers to the same identity key."""

    def __init__(self, key: str, candidates: List[str]) -> None:
        super().__init__(f"{len(candidates)} observed steps share identity '{key}': {', '.join(candidates)}")
        self.key = key
        self.candidates = candidates


def composite_key(step: PluginStep) -> str:
    return "|".join(
        [
            norm_type_name(step.plugin_type_name),
            norm_entity(step.primary_entity),
            norm_text(step.message).lower(),
            step.stage.label,
            str(int(step.rank)),
        ]
    )


def identity_key(step: PluginStep, mode: str) -> str:
    if mode == GUID:
        return norm_guid(step.id)
    if mode == COMPOSITE:
        return composite_key(step)
    raise ValueError(f"Unknown identity mode: {mode!r}")


def same_identity(desired: PluginStep, observed: PluginStep, mode: str) -> bool:
    """True when both steps denote the same logical object under `mode`."""
    key = identity_key(desired, mode)
    return bool(key) and key == identity_key(observed, mode)


class IdentityIndex:
    """Observed steps indexed by identity key, duplicates kept for detection."""

    def __init__(self, observed: Iterable[PluginStep], mode: str) -> None:
        self.mode = mode
        self._index: Dict[str, List[PluginStep]] = {}
        for step in observed:
            self._index.setdefault(identity_key(step, mode), []).append(step)

    def __contains__(self, key: str) -> bool:
        return key in self._index

    def lookup(self, desired: PluginStep) -> Optional[PluginStep]:
        key = identity_key(desired, self.mode)
        found = self._index.get(key) or []
        if len(found) > 1:
            raise AmbiguousIdentityError(key, [s.id or s.name for s in found])
        return found[0] if found else None

    def duplicates(self) -> Dict[str, List[PluginStep]]:
        return {k: v for k, v in self._index.items() if len(v) > 1}
