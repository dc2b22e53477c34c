import json

import pytest

from moltkeeper.config.settings import GatewayEnvironment
from moltkeeper.core.auth_state import (
    evaluate,
    get_model_refs,
    get_primary_model,
    provider_from_model_ref,
    provider_prefix,
    summarize_auth_state,
)

CODEX_CONFIG = json.dumps({"agents": {"defaults": {"model": {"primary": "openai-codex/gpt-5.3-codex"}}}})


# =============================================================================
# summarize_auth_state
# =============================================================================

def test_detects_mismatch_when_primary_provider_has_no_profile():
    result = summarize_auth_state(
        CODEX_CONFIG,
        json.dumps({"profiles": [{"provider": "anthropic", "name": "default"}]}),
        oauth_file_present=True,
    )

    assert result.primary_model == "openai-codex/gpt-5.3-codex"
    assert result.primary_provider == "openai-codex"
    assert result.providers_with_profiles == ["anthropic"]
    assert result.mismatch_detected is True


def test_passes_when_profile_provider_matches_primary():
    result = summarize_auth_state(
        CODEX_CONFIG,
        json.dumps({"profiles": [{"provider": "openai-codex", "name": "oauth"}]}),
    )

    assert result.providers_with_profiles == ["openai-codex"]
    assert result.mismatch_detected is False


def test_extracts_providers_from_model_references():
    result = summarize_auth_state(
        json.dumps({"agents": {"defaults": {"model": {"primary": "anthropic/claude-sonnet-4-5"}}}}),
        json.dumps({"entries": [{"model": "openai-codex/gpt-5.3-codex"}, {"model": "anthropic/claude-opus-4-6"}]}),
    )

    assert result.providers_with_profiles == ["openai-codex", "anthropic"]
    assert result.mismatch_detected is False


def test_malformed_auth_profiles_still_report_provider():
    result = summarize_auth_state(CODEX_CONFIG, '{"profiles":[{"provider":"openai-codex"')

    assert result.auth_profiles_present is True
    assert result.providers_with_profiles == ["openai-codex"]
    assert result.mismatch_detected is False


def test_provider_token_must_be_whole_word():
    result = summarize_auth_state(
        json.dumps({"agents": {"defaults": {"model": "openai/gpt-5"}}}),
        '{"profiles":{"openai-codex:default"',
    )

    assert result.providers_with_profiles == []
    assert result.mismatch_detected is True


def test_summary_is_sanitized():
    secret = "sk-test-super-secret"
    result = summarize_auth_state(
        CODEX_CONFIG,
        json.dumps({"profiles": [{"provider": "openai-codex", "apiKey": secret}]}),
        oauth_file_present=True,
        agent_id="main",
    )

    assert result.model_dump() == {
        "primary_model": "openai-codex/gpt-5.3-codex",
        "primary_provider": "openai-codex",
        "agent_id": "main",
        "auth_profiles_present": True,
        "providers_with_profiles": ["openai-codex"],
        "has_legacy_oauth_import_file": True,
        "mismatch_detected": False,
    }
    assert secret not in result.model_dump_json()


def test_missing_inputs():
    result = summarize_auth_state(None, None)

    assert result.primary_model is None
    assert result.auth_profiles_present is False
    assert result.mismatch_detected is False


# =============================================================================
# Model references
# =============================================================================

@pytest.mark.parametrize("ref,expected", [
    ("openai-codex/gpt-5.3-codex", "openai-codex"),
    ("Anthropic/claude-sonnet-4-5", "anthropic"),
    ("workers-ai/@cf/meta/llama", "workers-ai"),
    ("https://example.com/model", None),
    ("no-slash", None),
    ("", None),
    (None, None),
])
def test_provider_from_model_ref(ref, expected):
    assert provider_from_model_ref(ref) == expected


def test_primary_model_shapes():
    assert get_primary_model({"agents": {"defaults": {"model": "anthropic/x"}}}) == "anthropic/x"
    assert get_primary_model({"agents": {"defaults": {"model": {"primary": "openai/y"}}}}) == "openai/y"
    assert get_primary_model({"agents": {"defaults": {"model": {"primary": 3}}}}) is None
    assert get_primary_model([]) is None


def test_model_refs_include_fallbacks():
    config = {"agents": {"defaults": {"model": {"primary": "anthropic/x", "fallbacks": ["openai-codex/y", 7]}}}}

    assert get_model_refs(config) == ["anthropic/x", "openai-codex/y"]


# =============================================================================
# evaluate
# =============================================================================

def test_evaluate_env_credential_satisfies_anthropic():
    config = {"agents": {"defaults": {"model": "anthropic/claude"}}}

    snapshot = evaluate(config, None, GatewayEnvironment.from_env({"ANTHROPIC_OAUTH_TOKEN": "tok"}))

    assert snapshot.primary_provider == "anthropic"
    assert snapshot.has_required_provider is True
    assert snapshot.mismatch is False


def test_evaluate_store_profile_matches_case_insensitively():
    config = {"agents": {"defaults": {"model": "OpenAI-Codex/gpt"}}}
    store = json.dumps({"version": 1, "profiles": {"OPENAI-CODEX:default": {"type": "token", "token": "t"}}})

    snapshot = evaluate(config, store, GatewayEnvironment())

    assert snapshot.mismatch is False


def test_evaluate_legacy_store_shape():
    config = {"agents": {"defaults": {"model": "openai-codex/gpt"}}}
    store = json.dumps({"codex": {"provider": "openai-codex", "apiKey": "k"}})

    assert evaluate(config, store, GatewayEnvironment()).mismatch is False


def test_evaluate_mismatch():
    config = {"agents": {"defaults": {"model": "openai-codex/gpt"}}}
    store = json.dumps({"version": 1, "profiles": {"anthropic:default": {"type": "api_key", "provider": "anthropic"}}})

    snapshot = evaluate(config, store, GatewayEnvironment())

    assert snapshot.auth_profiles_present is True
    assert snapshot.has_required_provider is False
    assert snapshot.mismatch is True
    assert snapshot.to_dict()["primaryProvider"] == "openai-codex"


def test_evaluate_without_primary_provider_is_consistent():
    assert evaluate({}, None, GatewayEnvironment()).mismatch is False


@pytest.mark.parametrize(
    "ref, expected",
    [
        ("anthropic/claude sonnet", "anthropic"),
        ("My_Provider+x/model", "my_provider+x"),
        ("workers-ai/@cf/meta/llama", "workers-ai"),
        ("/leading-slash", None),
        ("no-slash", None),
        ("https://example.com/model", None),
    ],
)
def test_provider_prefix(ref, expected):
    assert provider_prefix(ref) == expected


def test_evaluate_uses_text_before_first_slash():
    config = {"agents": {"defaults": {"model": "anthropic/claude sonnet"}}}

    snapshot = evaluate(config, None, GatewayEnvironment())

    assert snapshot.primary_provider == "anthropic"
    assert snapshot.mismatch is True


def test_evaluate_malformed_store_is_not_present():
    config = {"agents": {"defaults": {"model": "anthropic/claude"}}}

    snapshot = evaluate(config, '{"profiles": {"anthropic:default"', GatewayEnvironment())

    assert snapshot.auth_profiles_present is False
    assert snapshot.mismatch is True
