from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable

_NAMESPACE_PREFIX_PATTERN = re.compile(r"^(models|model|m)/", re.IGNORECASE)
_TOKEN_SEPARATOR_PATTERN = re.compile(r"[-_\s]+")
_VERSION_TOKEN_PATTERN = re.compile(r"^v?(\d+(?:\.\d+)*)$")
_BUILD_TAG_PATTERN = re.compile(r"^\d{4,}$")

VARIANT_TOKENS = frozenset(
    {
        "latest",
        "default",
        "stable",
        "fast",
        "turbo",
        "slow",
        "high",
        "low",
        "medium",
        "mini",
        "lite",
        "light",
        "pro",
        "ultra",
        "think",
        "thinking",
        "instruct",
        "chat",
        "online",
        "beta",
        "preview",
        "free",
    }
)


@dataclass(frozen=True, slots=True)
class NormalizedModel:
    raw: str
    cleaned: str
    canonical: str
    family_key: str
    version_parts: tuple[int, ...] = ()


def normalize_model_name(raw: str) -> NormalizedModel:
    """Reduce a vendor model id to its canonical name and family key.

    ``models/gemini-flash-latest`` and ``gemini-flash`` share the canonical
    name ``gemini-flash``; ``qwen/qwen2.5-72b-instruct-20250101`` drops both the
    vendor path and the date tag. Versions stay in the canonical name but not in
    the family key, so ``gemini-2.5-flash`` joins the ``gemini-flash`` family.
    """
    without_prefix = _NAMESPACE_PREFIX_PATTERN.sub("", raw.strip()).lower()
    cleaned = without_prefix.rsplit("/", 1)[-1].strip()

    canonical_tokens: list[str] = []
    family_tokens: list[str] = []
    version_parts: tuple[int, ...] = ()
    for token in _TOKEN_SEPARATOR_PATTERN.split(cleaned):
        if not token or _BUILD_TAG_PATTERN.match(token):
            continue
        version_match = _VERSION_TOKEN_PATTERN.match(token)
        if version_match is not None:
            if not version_parts:
                version_parts = tuple(
                    int(part) for part in version_match.group(1).split(".")
                )
            canonical_tokens.append(token)
            continue
        if token in VARIANT_TOKENS:
            continue
        canonical_tokens.append(token)
        family_tokens.append(token)

    return NormalizedModel(
        raw=raw,
        cleaned=cleaned,
        canonical="-".join(canonical_tokens) or cleaned,
        family_key="-".join(family_tokens) or cleaned,
        version_parts=version_parts,
    )


def compare_version_parts(left: tuple[int, ...], right: tuple[int, ...]) -> int:
    width = max(len(left), len(right))
    padded_left = left + (0,) * (width - len(left))
    padded_right = right + (0,) * (width - len(right))
    if padded_left > padded_right:
        return 1
    if padded_left < padded_right:
        return -1
    return 0


@dataclass(slots=True)
class ModelAliasMaps:
    canonical_to_variants: dict[str, set[str]] = field(default_factory=dict)
    variant_to_canonical: dict[str, str] = field(default_factory=dict)

    def resolve(self, requested_model: str) -> str | None:
        requested = requested_model.strip()
        if not requested:
            return None
        canonical = self.variant_to_canonical.get(requested)
        if canonical is not None:
            return canonical
        return self.variant_to_canonical.get(normalize_model_name(requested).canonical)

    def acceptable_variants(self, requested_model: str) -> set[str]:
        canonical = self.resolve(requested_model)
        if canonical is None:
            return set()
        return set(self.canonical_to_variants.get(canonical, ()))


def _preferred_canonical(candidates: list[NormalizedModel]) -> str:
    best: NormalizedModel | None = None
    for candidate in candidates:
        if not candidate.version_parts:
            continue
        if (
            best is None
            or compare_version_parts(candidate.version_parts, best.version_parts) > 0
        ):
            best = candidate
    if best is None:
        best = candidates[0]
    return best.canonical


def build_model_alias_maps(model_lists: Iterable[Iterable[str]]) -> ModelAliasMaps:
    """Group every advertised model id by family and pick one canonical per family."""
    families: dict[str, list[NormalizedModel]] = {}
    seen: set[str] = set()
    for models in model_lists:
        for raw in models:
            if not isinstance(raw, str) or not raw.strip() or raw in seen:
                continue
            seen.add(raw)
            normalized = normalize_model_name(raw)
            families.setdefault(normalized.family_key, []).append(normalized)

    alias_maps = ModelAliasMaps()
    raw_assignments: dict[str, str] = {}
    for candidates in families.values():
        preferred = _preferred_canonical(candidates)
        alias_maps.canonical_to_variants[preferred] = {
            candidate.raw for candidate in candidates
        }
        alias_maps.variant_to_canonical[preferred] = preferred
        for candidate in candidates:
            alias_maps.variant_to_canonical.setdefault(candidate.canonical, preferred)
            raw_assignments[candidate.raw] = preferred

    # Raw ids take precedence over a colliding canonical form from another family.
    alias_maps.variant_to_canonical.update(raw_assignments)
    return alias_maps
