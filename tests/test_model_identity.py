from __future__ import annotations

import pytest

from hermes_gateway.model_identity import (
    build_model_alias_maps,
    compare_version_parts,
    normalize_model_name,
)


def test_normalize_strips_namespace_vendor_and_variant_tokens() -> None:
    normalized = normalize_model_name("models/gemini-flash-latest")
    assert normalized.cleaned == "gemini-flash-latest"
    assert normalized.canonical == "gemini-flash"
    assert normalized.family_key == "gemini-flash"
    assert normalized.version_parts == ()


def test_normalize_keeps_version_in_canonical_but_not_family() -> None:
    normalized = normalize_model_name("gemini-2.5-flash")
    assert normalized.canonical == "gemini-2.5-flash"
    assert normalized.family_key == "gemini-flash"
    assert normalized.version_parts == (2, 5)


def test_normalize_drops_vendor_path_and_date_tags() -> None:
    normalized = normalize_model_name("Qwen/Qwen3-235B-A22B-Instruct-2507")
    assert normalized.cleaned == "qwen3-235b-a22b-instruct-2507"
    assert normalized.canonical == "qwen3-235b-a22b"
    assert normalized.family_key == "qwen3-235b-a22b"


def test_normalize_uses_first_version_token_and_v_prefix() -> None:
    normalized = normalize_model_name("deepseek_v3.1 chat 2")
    assert normalized.canonical == "deepseek-v3.1-2"
    assert normalized.family_key == "deepseek"
    assert normalized.version_parts == (3, 1)


def test_normalize_falls_back_to_cleaned_name_when_only_variants_remain() -> None:
    normalized = normalize_model_name("m/Turbo")
    assert normalized.canonical == "turbo"
    assert normalized.family_key == "turbo"


@pytest.mark.parametrize(
    "raw",
    [
        "llama-3-70b",
        "meta/llama-3-70b",
        "models/llama-3-70b-instruct",
        "llama_3_70b_20240601",
        "LLAMA 3 70B Free",
    ],
)
def test_normalize_groups_prefix_date_and_variant_differences(raw: str) -> None:
    assert normalize_model_name(raw).family_key == "llama-70b"


def test_compare_version_parts_pads_missing_components() -> None:
    assert compare_version_parts((2, 5), (2, 5, 0)) == 0
    assert compare_version_parts((3,), (2, 9)) == 1
    assert compare_version_parts((1, 5), (1, 10)) == -1


def test_alias_maps_prefer_highest_version_in_family() -> None:
    alias_maps = build_model_alias_maps(
        [["models/gemini-flash-latest", "gemini-2.5-flash"], ["gemini-2.0-flash"]]
    )

    assert alias_maps.resolve("gemini-flash") == "gemini-2.5-flash"
    assert alias_maps.canonical_to_variants["gemini-2.5-flash"] == {
        "models/gemini-flash-latest",
        "gemini-2.5-flash",
        "gemini-2.0-flash",
    }
    assert alias_maps.acceptable_variants("gemini-flash") == {
        "models/gemini-flash-latest",
        "gemini-2.5-flash",
        "gemini-2.0-flash",
    }


def test_alias_maps_without_versions_prefer_first_candidate() -> None:
    alias_maps = build_model_alias_maps([["claude-sonnet-thinking", "claude-sonnet"]])
    assert set(alias_maps.canonical_to_variants) == {"claude-sonnet"}
    assert alias_maps.resolve("claude-sonnet-thinking") == "claude-sonnet"


def test_alias_maps_match_sibling_dated_variants() -> None:
    alias_maps = build_model_alias_maps(
        [["qwen/qwen3-coder-480b-20250722"], ["qwen3-coder-480b-20250801"]]
    )
    assert alias_maps.acceptable_variants("qwen3-coder-480b-20250722") == {
        "qwen/qwen3-coder-480b-20250722",
        "qwen3-coder-480b-20250801",
    }


def test_alias_resolution_is_idempotent() -> None:
    alias_maps = build_model_alias_maps(
        [
            ["gpt-4o", "gpt-4o-mini", "models/gemini-flash-latest"],
            ["gemini-2.5-flash", "openai/gpt-4o-2024-08-06", "llama-3.1-8b-instruct"],
        ]
    )
    for canonical, variants in alias_maps.canonical_to_variants.items():
        assert variants
        for variant in variants:
            assert alias_maps.variant_to_canonical[variant] == canonical
        assert alias_maps.variant_to_canonical[canonical] == canonical


def test_unknown_model_does_not_resolve_through_family_alone() -> None:
    alias_maps = build_model_alias_maps([["gpt-4"]])
    assert alias_maps.resolve("gpt-4") == "gpt-4"
    assert alias_maps.resolve("gpt-5") is None
    assert alias_maps.acceptable_variants("gpt-5") == set()
    assert alias_maps.acceptable_variants("") == set()
