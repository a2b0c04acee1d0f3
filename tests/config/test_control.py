from __future__ import annotations

import asyncio
import json

import pytest

from opencraw.config.control import (
    REDACTED,
    ConfigConflictError,
    ConfigControl,
    ConfigSnapshot,
    hash_settings,
    merge_patch,
    redact,
    unredact,
)
from opencraw.config.schema import ConfigError, Settings


@pytest.fixture
def control(tmp_path):
    settings = Settings()
    settings.keys.openai_api_key = "sk-live"
    return ConfigControl(tmp_path / "config.json", settings)


def test_hash_is_stable_and_content_sensitive():
    a, b = Settings(), Settings()
    assert hash_settings(a) == hash_settings(b)
    b.general.model = "gpt-4o"
    assert hash_settings(a) != hash_settings(b)


def test_merge_patch():
    target = {"a": 1, "b": {"c": 2, "d": 3}}
    merged = merge_patch(target, {"b": {"c": 9, "d": None}, "e": [1]})
    assert merged == {"a": 1, "b": {"c": 9}, "e": [1]}
    assert target == {"a": 1, "b": {"c": 2, "d": 3}}


def test_redact_hides_every_secret():
    settings = Settings.model_validate(
        {
            "keys": {"anthropic_api_key": "sk-ant"},
            "security": {"control_api_keys": [{"token": "t1"}]},
            "automation": {"webhook_secret": "w", "source_secrets": {"github": "gh"}},
        }
    )
    dumped = redact(settings.model_dump(mode="json"))
    assert dumped["keys"]["anthropic_api_key"] == REDACTED
    assert dumped["keys"]["openai_api_key"] == ""
    assert dumped["security"]["control_api_keys"][0]["token"] == REDACTED
    assert dumped["automation"]["webhook_secret"] == REDACTED
    assert dumped["automation"]["source_secrets"] == {"github": REDACTED}
    assert "sk-ant" not in json.dumps(dumped)


def test_unredact_restores_secrets():
    current = Settings.model_validate(
        {
            "keys": {"openai_api_key": "sk-live"},
            "security": {"control_api_keys": [{"token": "t1"}]},
            "automation": {"source_secrets": {"github": "gh"}},
        }
    ).model_dump(mode="json")
    document = redact(json.loads(json.dumps(current)))
    document["automation"]["source_secrets"]["stripe"] = "new"

    restored = unredact(document, current)

    assert restored["keys"]["openai_api_key"] == "sk-live"
    assert restored["security"]["control_api_keys"][0]["token"] == "t1"
    assert restored["automation"]["source_secrets"] == {"github": "gh", "stripe": "new"}


async def test_patch_persists_and_rotates_hash(control, tmp_path):
    before = control.snapshot()

    after = await control.patch(before.base_hash, {"general": {"model": "gpt-4o"}})

    assert after.base_hash != before.base_hash
    assert after.settings.general.model == "gpt-4o"
    on_disk = json.loads((tmp_path / "config.json").read_text())
    assert on_disk["general"]["model"] == "gpt-4o"
    assert on_disk["keys"]["openai_api_key"] == "sk-live"


async def test_stale_base_hash_is_refused(control):
    base = control.snapshot().base_hash
    await control.patch(base, {"general": {"model": "gpt-4o"}})

    with pytest.raises(ConfigConflictError, match="base_hash mismatch"):
        await control.patch(base, {"general": {"model": "gpt-4.1"}})
    assert control.settings.general.model == "gpt-4o"


async def test_redacted_values_in_patch_keep_secret(control):
    await control.patch(None, {"keys": {"openai_api_key": REDACTED}})
    assert control.settings.keys.openai_api_key == "sk-live"


async def test_invalid_patch_leaves_state_alone(control, tmp_path):
    base = control.snapshot().base_hash
    with pytest.raises(ConfigError):
        await control.patch(base, {"agent": {"max_iterations": 0}})
    with pytest.raises(ConfigError, match="invalid config"):
        await control.patch(base, {"agent": {"max_iterations": "many"}})
    assert control.snapshot().base_hash == base
    assert not (tmp_path / "config.json").exists()


async def test_apply_replaces_everything(control):
    replacement = Settings().model_dump(mode="json")
    replacement["general"]["model"] = "claude-3-haiku"
    snapshot = await control.apply(None, replacement)
    assert snapshot.settings.general.model == "claude-3-haiku"
    assert snapshot.settings.keys.openai_api_key == ""


async def test_apply_with_stale_hash_is_refused(control):
    base = control.snapshot().base_hash
    await control.patch(base, {"general": {"model": "gpt-4o"}})
    document = control.snapshot().to_dict()["config"]
    with pytest.raises(ConfigConflictError, match="base_hash mismatch"):
        await control.apply(base, document)
    assert control.settings.general.model == "gpt-4o"


async def test_concurrent_patch_and_apply_on_same_hash(control):
    base = control.snapshot().base_hash
    document = control.snapshot().to_dict()["config"]
    document["general"]["model"] = "gpt-4.1"

    results = await asyncio.gather(
        control.patch(base, {"general": {"model": "gpt-4o"}}),
        control.apply(base, document),
        return_exceptions=True,
    )

    assert isinstance(results[0], ConfigSnapshot)
    assert isinstance(results[1], ConfigConflictError)
    assert control.settings.general.model == "gpt-4o"
    assert control.settings.keys.openai_api_key == "sk-live"


def test_snapshot_dict_is_redacted(control):
    data = control.snapshot().to_dict()
    assert data["config"]["keys"]["openai_api_key"] == REDACTED
    assert set(data) == {"path", "base_hash", "updated_at", "config"}
