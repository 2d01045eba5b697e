"""
Diff engine: desired plugin steps vs observed plugin steps.

Each desired step is classified as one of

  MISSING             no observed counterpart; candidate for create
  IMMUTABLE_CONFLICT  plugin type, primary entity or message differ; the
                      step must be recreated by hand, nothing else is compared
  MUTABLE_DRIFT       one or more mutable fields and/or images differ
  MATCH               nothing to do
  AMBIGUOUS           several observed steps share the identity key

Mutable fields are compared without short-circuit so that every drifted
field is reported. Images are reconciled by name, independently of the
parent: extra images are deleted, missing ones created and changed ones
recreated (the platform has no in-place image edit).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, List, Literal, Optional

from .identity import AmbiguousIdentityError, IdentityIndex
from .model import PluginStep, RunAsUser, StepImage, norm_entity, norm_text, norm_type_name

Outcome = Literal["MISSING", "IMMUTABLE_CONFLICT", "MUTABLE_DRIFT", "MATCH", "AMBIGUOUS"]
ImageOp = Literal["CREATE", "DELETE", "RECREATE"]

UserResolver = Callable[[RunAsUser], Optional[str]]


@dataclass(frozen=True)
class FieldDelta:
    """One differing field: logical name plus both sides in display form."""
    field: str
    desired: Any
    observed: Any

    def describe(self) -> str:
        return f"{self.field} differs (desired={self.desired!r}, observed={self.observed!r})"


@dataclass(frozen=True)
class ImageAction:
    """
    Planned change to a step image.

    `image` is the desired image for CREATE/RECREATE and the observed image
    for DELETE; `target_id` is the observed image record DELETE and RECREATE
    remove.
    """
    op: ImageOp
    image: StepImage
    target_id: str = ""
    reason: str = ""


@dataclass
class StepDecision:
    """Diff outcome for a single desired step."""
    op: Outcome
    desired: PluginStep
    observed: Optional[PluginStep] = None
    reason: str = ""
    field_deltas: List[FieldDelta] = field(default_factory=list)
    immutable_deltas: List[FieldDelta] = field(default_factory=list)
    image_actions: List[ImageAction] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def label(self) -> str:
        return self.desired.label()

    def drifted_fields(self) -> List[str]:
        return [d.field for d in self.field_deltas]


@dataclass
class ReconcilePlan:
    decisions: List[StepDecision] = field(default_factory=list)

    def _by(self, op: Outcome) -> List[StepDecision]:
        return [d for d in self.decisions if d.op == op]

    @property
    def creates(self) -> List[StepDecision]:
        return self._by("MISSING")

    @property
    def immutable_conflicts(self) -> List[StepDecision]:
        return self._by("IMMUTABLE_CONFLICT")

    @property
    def updates(self) -> List[StepDecision]:
        return self._by("MUTABLE_DRIFT")

    @property
    def matches(self) -> List[StepDecision]:
        return self._by("MATCH")

    @property
    def ambiguous(self) -> List[StepDecision]:
        return self._by("AMBIGUOUS")

    def counts(self) -> dict:
        out: dict = {}
        for d in self.decisions:
            out[d.op] = out.get(d.op, 0) + 1
        return out


# =========================
# Field comparison
# =========================

def compare_immutable(desired: PluginStep, observed: PluginStep) -> List[FieldDelta]:
    deltas: List[FieldDelta] = []
    if norm_type_name(desired.plugin_type_name) != norm_type_name(observed.plugin_type_name):
        deltas.append(FieldDelta("pluginType", desired.plugin_type_name, observed.plugin_type_name))
    if norm_entity(desired.primary_entity) != norm_entity(observed.primary_entity):
        deltas.append(FieldDelta("primaryEntity", desired.primary_entity, observed.primary_entity))
    if norm_text(desired.message).lower() != norm_text(observed.message).lower():
        deltas.append(FieldDelta("message", desired.message, observed.message))
    return deltas


def _run_as_delta(desired: PluginStep, observed: PluginStep, resolve_user: Optional[UserResolver]) -> Optional[FieldDelta]:
    observed_uid = observed.impersonating_user_id or observed.run_as.user_id
    if desired.run_as.is_calling_user:
        wanted = ""
    elif resolve_user is not None:
        wanted = resolve_user(desired.run_as) or ""
        if not wanted:
            return FieldDelta("runAsUser", desired.run_as.describe() + " (unresolved)", observed_uid or "calling user")
    else:
        wanted = desired.run_as.user_id
    if wanted != observed_uid:
        return FieldDelta("runAsUser", wanted or "calling user", observed_uid or "calling user")
    return None


def compare_mutable(
    desired: PluginStep,
    observed: PluginStep,
    *,
    resolve_user: Optional[UserResolver] = None,
) -> List[FieldDelta]:
    """Every mutable field that differs, in a stable order."""
    pairs = [
        ("name", norm_text(desired.name), norm_text(observed.name)),
        ("description", norm_text(desired.description), norm_text(observed.description)),
        ("configuration", norm_text(desired.configuration), norm_text(observed.configuration)),
        ("filteringAttributes", ",".join(desired.filtering_attributes), ",".join(observed.filtering_attributes)),
        ("rank", int(desired.rank), int(observed.rank)),
        ("mode", desired.mode.label, observed.mode.label),
        ("stage", desired.stage.label, observed.stage.label),
        ("state", desired.state.label, observed.state.label),
        ("asyncAutoDelete", desired.effective_async_auto_delete, observed.effective_async_auto_delete),
    ]
    deltas = [FieldDelta(name, want, have) for name, want, have in pairs if want != have]
    run_as = _run_as_delta(desired, observed, resolve_user)
    if run_as:
        deltas.append(run_as)
    return deltas


def diff_images(desired: List[StepImage], observed: List[StepImage]) -> List[ImageAction]:
    """Name-keyed image reconciliation: deletes, recreates, then creates."""
    wanted = {img.name: img for img in desired}
    have = {img.name: img for img in observed}
    actions: List[ImageAction] = []

    for img in observed:
        if img.name not in wanted:
            actions.append(ImageAction("DELETE", img, target_id=img.id, reason=f"image '{img.name}' not in desired state"))
    for img in desired:
        current = have.get(img.name)
        if current is None:
            continue
        changed = img.differences(current)
        if changed:
            actions.append(ImageAction("RECREATE", img, target_id=current.id, reason=f"image '{img.name}' differs: {', '.join(changed)}"))
    for img in desired:
        if img.name not in have:
            actions.append(ImageAction("CREATE", img, reason=f"image '{img.name}' missing"))
    return actions


# =========================
# Plan
# =========================

def _business_warnings(step: PluginStep) -> List[str]:
    if step.requires_pre_image and not step.has_pre_image():
        return [f"Step '{step.label()}' on {step.message} has no PreImage"]
    return []


def decide(
    desired: PluginStep,
    observed: Optional[PluginStep],
    *,
    resolve_user: Optional[UserResolver] = None,
) -> StepDecision:
    """Classify one desired step against its (already resolved) observed counterpart."""
    warnings = _business_warnings(desired)

    if observed is None:
        return StepDecision("MISSING", desired, reason="Not found", warnings=warnings)

    immutable = compare_immutable(desired, observed)
    if immutable:
        return StepDecision(
            "IMMUTABLE_CONFLICT",
            desired,
            observed,
            reason="Immutable field(s) differ: " + ", ".join(d.field for d in immutable),
            immutable_deltas=immutable,
            warnings=warnings,
        )

    deltas = compare_mutable(desired, observed, resolve_user=resolve_user)
    images = diff_images(desired.images, observed.images)
    if deltas or images:
        parts = []
        if deltas:
            parts.append("Field(s) differ: " + ", ".join(d.field for d in deltas))
        if images:
            parts.append(f"{len(images)} image change(s)")
        return StepDecision(
            "MUTABLE_DRIFT",
            desired,
            observed,
            reason="; ".join(parts),
            field_deltas=deltas,
            image_actions=images,
            warnings=warnings,
        )

    return StepDecision("MATCH", desired, observed, reason="Identical", warnings=warnings)


def reconcile_plan(
    desired: Iterable[PluginStep],
    observed: Iterable[PluginStep],
    *,
    mode: str = "guid",
    resolve_user: Optional[UserResolver] = None,
) -> ReconcilePlan:
    """Classify every desired step, in desired-list order."""
    index = IdentityIndex(observed, mode)
    plan = ReconcilePlan()
    for step in desired:
        try:
            current = index.lookup(step)
        except AmbiguousIdentityError as exc:
            plan.decisions.append(StepDecision("AMBIGUOUS", step, reason=str(exc)))
            continue
        plan.decisions.append(decide(step, current, resolve_user=resolve_user))
    return plan
