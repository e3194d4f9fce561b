from __future__ import annotations

from companion_memory.memory.tags import (
    DEFAULT_ALLOWED_TAGS,
    LegacyRole,
    MemoryTag,
    base_tag,
    chunk_tag,
    effective_tag,
    is_ai_output,
    legacy_role_for_tag,
    tag_allowed,
    tag_from_legacy_role,
)
from companion_memory.memory.types import MemoryRecord


def test_effective_tag_prefers_explicit_tag() -> None:
    assert effective_tag("manual", "user") == "manual"
    assert effective_tag("  summary ", None) == "summary"


def test_effective_tag_falls_back_to_legacy_role() -> None:
    assert effective_tag(None, "user") == MemoryTag.USER_INPUT.value
    assert effective_tag("", "ai") == MemoryTag.AI_OUTPUT.value
    assert effective_tag(None, "narrator") == MemoryTag.UNKNOWN.value
    assert effective_tag(None, None) == MemoryTag.UNKNOWN.value


def test_legacy_role_mapping_round_trips_for_known_roles() -> None:
    assert LegacyRole.USER.to_tag() is MemoryTag.USER_INPUT
    assert tag_from_legacy_role(" USER ") == "user_input"
    assert legacy_role_for_tag("user_input_part_2") == "user"
    assert legacy_role_for_tag("ai_output") == "ai"
    assert legacy_role_for_tag("manual") is None


def test_chunk_tag_only_suffixes_multi_chunk_passages() -> None:
    assert chunk_tag("manual", 1, 1) == "manual"
    assert chunk_tag("manual", 2, 3) == "manual_part_2"
    assert base_tag("manual_part_2") == "manual"
    assert base_tag("manual_part_x") == "manual_part_x"


def test_tag_filter_matches_base_tag_and_chunk_variants() -> None:
    allowed = {"manual"}
    assert tag_allowed("manual", allowed)
    assert tag_allowed("manual_part_1", allowed)
    assert tag_allowed("manual_part_12", allowed)
    assert not tag_allowed("manualish", allowed)
    assert not tag_allowed("summary", allowed)


def test_empty_allow_list_admits_everything() -> None:
    assert tag_allowed("anything_at_all", set())


def test_default_allow_list_excludes_ai_output() -> None:
    assert "ai_output" not in DEFAULT_ALLOWED_TAGS
    assert {"user_input", "manual", "summary"} == set(DEFAULT_ALLOWED_TAGS)
    assert is_ai_output("ai_output_part_3")
    assert not is_ai_output("user_input")


def test_record_effective_tag_uses_legacy_role() -> None:
    record = MemoryRecord(id=1, text="hello", embedding=(1.0, 0.0), timestamp=0, role="ai")
    assert record.effective_tag == "ai_output"
    assert record.dimension == 2
