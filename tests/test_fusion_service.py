from __future__ import annotations

import pytest
from sqlalchemy.dialects import postgresql

from conftest import bilingual, make_item
from radar.models import CanonicalContent
from radar.services.category_service import CategoryService, ClassificationConfig
from radar.services.fusion_service import (
    DifferenceJudgment,
    FusionAction,
    FusionDecision,
    FusionService,
    GenerationError,
    STORY_LOCK_STRIPES,
    MissingStoryNumberError,
    decide,
    merge_generated_from,
    story_write_lock,
)
from radar.services.llm_service import InferenceTimeoutError

CLASSIFICATION = {
    "category": {"en": "Environment", "kh": "បរិស្ថាន"},
    "tags": [{"en": "Phnom Penh", "kh": "ភ្នំពេញ"}, {"en": "Flood", "kh": "ទឹកជំនន់"}],
}


def _fusion(db, fake_llm) -> FusionService:
    category_service = CategoryService(db, fake_llm, ClassificationConfig(auto_learn_keywords=False))
    return FusionService(db, fake_llm, category_service)


def _story_with_canonical(db, fake_llm):
    first = make_item(db, "Flood hits Phnom Penh", "Heavy rain flooded streets.", story_number=1, is_story_leader=True)
    fake_llm.set("generation", [bilingual()])
    fake_llm.set("classification", CLASSIFICATION)
    created = _fusion(db, fake_llm).fuse(first)
    return first, db.get(CanonicalContent, created.canonical_id)


@pytest.mark.parametrize(
    "difference, has_new_information, expected",
    [
        (0, True, FusionDecision.SKIP),
        (19, True, FusionDecision.SKIP),
        (20, True, FusionDecision.UPDATE),
        (59, True, FusionDecision.UPDATE),
        (60, True, FusionDecision.NEW_VERSION),
        (100, True, FusionDecision.NEW_VERSION),
        (50, False, FusionDecision.SKIP),
    ],
)
def test_decide_bands(difference: int, has_new_information: bool, expected: FusionDecision) -> None:
    decision, _ = decide(DifferenceJudgment(difference, has_new_information, "r"))
    assert decision == expected


def test_decide_reasons() -> None:
    assert decide(None) == (FusionDecision.CREATE, "New story created")
    assert decide(DifferenceJudgment(10, True, "r"))[1] == "Content too similar (90% match)"
    assert decide(DifferenceJudgment(70, False, "r"))[1] == "No new important information"
    assert decide(DifferenceJudgment(70, True, "r"))[1] == "Major content change"
    assert decide(DifferenceJudgment(40, True, "r"))[1] == "Updated with new information"


def test_merge_generated_from_keeps_order_and_uniqueness() -> None:
    assert merge_generated_from([3, 1], 2) == [3, 1, 2]
    assert merge_generated_from([3, 1], 1) == [3, 1]
    assert merge_generated_from(None, 5) == [5]


def test_first_item_creates_bilingual_canonical(db, fake_llm) -> None:
    first, canonical = _story_with_canonical(db, fake_llm)

    assert canonical.story_number == 1
    assert canonical.version == 1
    assert canonical.generated_from == [first.id]
    assert canonical.title_kh == "ទឹកជំនន់"
    assert canonical.is_published is True
    assert canonical.category.name_en == "Environment"
    assert [tag.name_en for tag in canonical.tags] == ["Phnom Penh", "Flood"]
    assert fake_llm.count("difference") == 0


def test_moderate_difference_updates_in_place(db, fake_llm) -> None:
    first, canonical = _story_with_canonical(db, fake_llm)
    second = make_item(db, "Flood death toll rises", "Two people died.", story_number=1, parent_id=first.id)
    fake_llm.set("difference", {"difference": 40, "has_new_information": True, "reasoning": "casualties"})
    fake_llm.set("update", {"title_en": "Flood kills two", "content_en": "Heavy rain flooded streets. Two died.",
                            "title_kh": "", "content_kh": "ភ្លៀង និងស្លាប់ពីរនាក់"})

    result = _fusion(db, fake_llm).fuse(second)

    db.refresh(canonical)
    assert result.action == FusionAction.UPDATED
    assert result.canonical_id == canonical.id
    assert canonical.version == 2
    assert canonical.generated_from == [first.id, second.id]
    assert canonical.title_en == "Flood kills two"
    assert canonical.title_kh == "ទឹកជំនន់"
    assert canonical.content_kh == "ភ្លៀង និងស្លាប់ពីរនាក់"
    assert db.query(CanonicalContent).count() == 1


def test_major_difference_creates_new_version_row(db, fake_llm) -> None:
    first, canonical = _story_with_canonical(db, fake_llm)
    second = make_item(db, "Government declares emergency", "State of emergency.", story_number=1, parent_id=first.id)
    fake_llm.set("difference", {"difference": 75, "has_new_information": True, "reasoning": "new angle"})
    fake_llm.set("generation", [bilingual("Emergency declared", "State of emergency in the capital.", kh=False)])

    result = _fusion(db, fake_llm).fuse(second)

    latest = db.get(CanonicalContent, result.canonical_id)
    assert result.action == FusionAction.CREATED_NEW_VERSION
    assert latest.id != canonical.id
    assert latest.version == 1
    assert latest.generated_from == [first.id, second.id]
    assert latest.category_id == canonical.category_id
    assert [tag.id for tag in latest.tags] == [tag.id for tag in canonical.tags]
    # Khmer carried over from the previous version when the model omits it
    assert latest.title_kh == canonical.title_kh
    assert _fusion(db, fake_llm).get_current_canonical(1).id == latest.id


@pytest.mark.parametrize(
    "judgment, reason",
    [
        ({"difference": 10, "has_new_information": True}, "Content too similar (90% match)"),
        ({"difference": 50, "has_new_information": False}, "No new important information"),
    ],
)
def test_skip_leaves_canonical_untouched(db, fake_llm, judgment: dict, reason: str) -> None:
    first, canonical = _story_with_canonical(db, fake_llm)
    second = make_item(db, "Flood in Phnom Penh", "Rain flooded streets.", story_number=1, parent_id=first.id)
    fake_llm.set("difference", judgment)

    result = _fusion(db, fake_llm).fuse(second)

    db.refresh(canonical)
    assert result.action == FusionAction.SKIPPED
    assert result.reason == reason
    assert canonical.version == 1
    assert canonical.generated_from == [first.id]


def test_refusing_an_already_fused_item_is_a_noop(db, fake_llm) -> None:
    first, canonical = _story_with_canonical(db, fake_llm)
    calls_before = fake_llm.count()

    result = _fusion(db, fake_llm).fuse(first)

    assert result.action == FusionAction.SKIPPED
    assert result.canonical_id == canonical.id
    assert fake_llm.count() == calls_before


def test_difference_failure_defaults_to_update(db, fake_llm) -> None:
    first, canonical = _story_with_canonical(db, fake_llm)
    second = make_item(db, "Flood update", "Water is receding.", story_number=1, parent_id=first.id)
    fake_llm.set("difference", InferenceTimeoutError("slow"))
    fake_llm.set("update", {"title_en": "Flood recedes", "content_en": "Water is receding."})

    result = _fusion(db, fake_llm).fuse(second)

    assert result.action == FusionAction.UPDATED
    assert result.difference == 50


def test_failed_merge_falls_back_to_fresh_generation(db, fake_llm) -> None:
    first, canonical = _story_with_canonical(db, fake_llm)
    second = make_item(db, "Flood update", "Water is receding.", story_number=1, parent_id=first.id)
    fake_llm.set("difference", {"difference": 30, "has_new_information": True})
    fake_llm.set("update", {"content_en": ""})
    fake_llm.set("generation", [bilingual("Water recedes", "Water is receding.", kh=False)])

    result = _fusion(db, fake_llm).fuse(second)

    db.refresh(canonical)
    assert result.action == FusionAction.UPDATED
    assert canonical.title_en == "Water recedes"
    assert canonical.content_kh == "ភ្លៀងធ្លាក់ខ្លាំង"


def test_create_requires_khmer_and_stores_nothing_on_failure(db, fake_llm) -> None:
    item = make_item(db, "Flood hits Phnom Penh", "Heavy rain", story_number=1, is_story_leader=True)
    fake_llm.set("generation", [bilingual(kh=False), bilingual(kh=False)])

    with pytest.raises(GenerationError):
        _fusion(db, fake_llm).fuse(item)

    assert fake_llm.count("generation") == 2
    assert db.query(CanonicalContent).count() == 0


def test_classification_failure_stores_uncategorized(db, fake_llm) -> None:
    item = make_item(db, "Flood hits Phnom Penh", "Heavy rain", story_number=1, is_story_leader=True)
    fake_llm.set("generation", [bilingual()])
    fake_llm.set("classification", InferenceTimeoutError("slow"))

    result = _fusion(db, fake_llm).fuse(item)

    canonical = db.get(CanonicalContent, result.canonical_id)
    assert result.action == FusionAction.CREATED
    assert canonical.category_id is None
    assert canonical.tags == []


def test_item_without_story_number_is_rejected(db, fake_llm) -> None:
    item = make_item(db, "Ungrouped", "text")

    with pytest.raises(MissingStoryNumberError):
        _fusion(db, fake_llm).fuse(item)
    assert fake_llm.count() == 0


def test_story_writes_lock_item_rows_in_the_database(db, fake_llm) -> None:
    query = _fusion(db, fake_llm).story_rows_query(4)

    sql = str(query.statement.compile(dialect=postgresql.dialect()))

    assert "FOR UPDATE" in sql
    assert "ORDER BY items.id" in sql


def test_story_write_lock_pool_is_fixed_size() -> None:
    from radar.services import fusion_service

    for story_number in range(1, 500):
        with story_write_lock(story_number):
            assert fusion_service._story_locks[story_number % STORY_LOCK_STRIPES].locked()

    assert len(fusion_service._story_locks) == STORY_LOCK_STRIPES


def test_canonical_written_elsewhere_during_generation_is_not_duplicated(db, fake_llm) -> None:
    item = make_item(db, "Flood hits Phnom Penh", "Heavy rain flooded streets.", story_number=1, is_story_leader=True)
    written = []

    def generate_while_other_worker_commits(prompt):
        if not written:
            other = CanonicalContent(story_number=1, title_en="Flood", content_en="Rain", generated_from=[], version=1)
            db.add(other)
            db.commit()
            written.append(other.id)
        return bilingual()

    fake_llm.set("generation", generate_while_other_worker_commits)
    fake_llm.set("classification", CLASSIFICATION)
    fake_llm.set("difference", {"difference": 5, "has_new_information": True, "reasoning": "same facts"})

    result = _fusion(db, fake_llm).fuse(item)

    assert result.action == FusionAction.SKIPPED
    assert result.canonical_id == written[0]
    assert db.query(CanonicalContent).filter(CanonicalContent.story_number == 1).count() == 1
