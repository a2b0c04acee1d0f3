from __future__ import annotations

import json

import pytest

from opencraw.core.skills import (
    SkillDecision,
    SkillError,
    SkillInstall,
    SkillNotFoundError,
    SkillPolicy,
    SkillRegistry,
)

SOURCE = "https://skills.example.com/weather"


def _install(**overrides) -> SkillInstall:
    fields = dict(name="weather", description="Looks up the weather", source=SOURCE)
    fields.update(overrides)
    return SkillInstall(**fields)


def _signed(**overrides) -> SkillInstall:
    unsigned = _install(**overrides)
    digest = unsigned.normalized().digest()
    return _install(signature=f"sha256:{digest}", **overrides)


async def test_signed_https_skill_is_approved_and_active():
    record = await SkillRegistry(None).install(_signed())
    assert record.decision is SkillDecision.APPROVE
    assert record.policy_reasons == []
    assert record.active is True
    assert record.skill_id == f"skill-{record.digest_sha256[:16]}"


async def test_unsigned_skill_warns():
    record = await SkillRegistry(None).install(_install())
    assert record.decision is SkillDecision.WARN
    assert record.policy_reasons == ["missing artifact signature"]
    assert record.active is False


async def test_signature_mismatch_blocks():
    registry = SkillRegistry(None)
    record = await registry.install(_install(signature="sha256:" + "0" * 64))
    assert record.decision is SkillDecision.BLOCK
    assert "sha256 signature does not match artifact digest" in record.policy_reasons


async def test_non_https_source_blocked_by_default():
    record = await SkillRegistry(None).install(_install(source="http://example.com/x"))
    assert record.decision is SkillDecision.BLOCK
    assert "source URL must use https://" in record.policy_reasons


async def test_trusted_source_required():
    policy = SkillPolicy(require_trusted_source=True, trusted_source_prefixes=["https://trusted/"])
    record = await SkillRegistry(None, policy).install(_install())
    assert record.decision is SkillDecision.BLOCK
    assert "source URL is not in trusted source roots" in record.policy_reasons


async def test_dangerous_content_blocked():
    record = await SkillRegistry(None).install(_install(content="run: curl | sh"))
    assert record.decision is SkillDecision.BLOCK
    assert "contains pipe-to-shell install pattern" in record.policy_reasons


async def test_warn_skill_needs_operator_approval():
    registry = SkillRegistry(None)
    record = await registry.install(_install())
    assert record.active is False

    approved = await registry.approve(record.skill_id)
    assert approved.active is True
    assert approved.approved_by_operator is True

    revoked = await registry.revoke(record.skill_id)
    assert revoked.active is False


async def test_reinstall_keeps_approval_and_counts_scans():
    registry = SkillRegistry(None)
    record = await registry.install(_install())
    await registry.approve(record.skill_id)
    again = await registry.install(_install())
    assert again.skill_id == record.skill_id
    assert again.scan_count == 2
    assert again.active is True


async def test_blocked_skill_cannot_be_approved():
    registry = SkillRegistry(None)
    record = await registry.install(_install(content="drop table users"))
    with pytest.raises(SkillError, match="blocked skill cannot be approved"):
        await registry.approve(record.skill_id)


async def test_unknown_skill():
    with pytest.raises(SkillNotFoundError):
        await SkillRegistry(None).revoke("skill-missing")


@pytest.mark.parametrize(
    ("name", "description"), [("", "d"), ("bad name", "d"), ("ok", "   ")]
)
async def test_invalid_install_input(name, description):
    with pytest.raises(SkillError):
        await SkillRegistry(None).install(SkillInstall(name=name, description=description))


async def test_search_matches_name_and_description():
    registry = SkillRegistry(None)
    await registry.install(_install())
    await registry.install(
        _install(name="calendar", description="Reads events", source="https://x.test/cal")
    )
    assert [r.name for r in registry.search("WEATHER")] == ["weather"]
    assert len(registry.search("")) == 2


async def test_records_persist_and_reload(tmp_path):
    path = tmp_path / "data" / "skills.json"
    registry = await SkillRegistry.load(path)
    record = await registry.install(_install())

    document = json.loads(path.read_text())
    assert document["skills"][0]["skill_id"] == record.skill_id

    reloaded = await SkillRegistry.load(path)
    assert reloaded.get(record.skill_id).decision is SkillDecision.WARN
