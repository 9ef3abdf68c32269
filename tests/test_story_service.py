from __future__ import annotations

from datetime import timedelta

import pytest

from conftest import different_story, make_item, make_source, same_story
from radar.models import CanonicalContent, Item, StoryReservation, StorySequence
from radar.models.item import utcnow
from radar.services.llm_service import InferenceTimeoutError
from radar.services.story_service import StoryService


def _service(db, fake_llm, **kwargs) -> StoryService:
    return StoryService(db, fake_llm, **kwargs)


def test_first_item_opens_story_one_as_leader(db, fake_llm) -> None:
    item = make_item(db, "Flood hits Phnom Penh", "Heavy rain flooded streets.")

    assignment = _service(db, fake_llm).assign_story(item.title, item.content, item_id=item.id)

    db.refresh(item)
    assert assignment.story_number == 1
    assert assignment.is_new_story is True
    assert item.story_number == 1
    assert item.is_story_leader is True
    assert item.parent_id is None
    assert fake_llm.count("similarity") == 0


def test_matching_item_joins_story_under_leader(db, fake_llm) -> None:
    source_a = make_source(db, "Channel A")
    source_b = make_source(db, "Channel B")
    leader = make_item(db, "Flood hits Phnom Penh", "Heavy rain", source=source_a, story_number=1, is_story_leader=True)
    follower = make_item(db, "Phnom Penh streets under water", "Rain again", source=source_b)
    fake_llm.set("similarity", same_story(0.9))

    assignment = _service(db, fake_llm).assign_story(
        follower.title, follower.content, exclude_source_id=source_b.id, item_id=follower.id
    )

    db.refresh(follower)
    assert assignment.story_number == 1
    assert assignment.is_new_story is False
    assert assignment.leader_id == leader.id
    assert follower.parent_id == leader.id
    assert follower.is_story_leader is False


def test_similarity_must_exceed_threshold(db, fake_llm) -> None:
    make_item(db, "Flood hits Phnom Penh", "Heavy rain", story_number=1, is_story_leader=True)
    fake_llm.set("similarity", same_story(0.65))

    assignment = _service(db, fake_llm).assign_story("Flood update", "More rain")

    assert assignment.is_new_story is True
    assert assignment.story_number == 2


def test_confident_different_story_gives_low_similarity(db, fake_llm) -> None:
    make_item(db, "Football final tonight", "Kick-off at 8", story_number=1, is_story_leader=True)
    fake_llm.set("similarity", different_story(0.9))

    assignment = _service(db, fake_llm).assign_story("Flood hits Phnom Penh", "Heavy rain")

    assert assignment.is_new_story is True


def test_similarity_failure_means_no_match_not_error(db, fake_llm) -> None:
    make_item(db, "Flood hits Phnom Penh", "Heavy rain", story_number=1, is_story_leader=True)
    make_item(db, "Election day", "Voting opens", story_number=2, is_story_leader=True)
    fake_llm.set("similarity", [InferenceTimeoutError("slow"), {"same_story": "true", "confidence": 0.95}])

    assignment = _service(db, fake_llm).assign_story("Flood update", "More rain")

    # Most recent story is compared first; its call fails, the older one matches
    assert assignment.story_number == 1
    assert fake_llm.count("similarity") == 2


def test_candidates_outside_lookback_window_are_ignored(db, fake_llm) -> None:
    make_item(db, "Old flood", "Last month", story_number=1, is_story_leader=True,
              scraped_at=utcnow() - timedelta(days=10))
    fake_llm.set("similarity", same_story(0.99))

    assignment = _service(db, fake_llm).assign_story("Flood hits Phnom Penh", "Heavy rain")

    assert assignment.is_new_story is True
    assert assignment.story_number == 2
    assert fake_llm.count("similarity") == 0


def test_one_comparison_per_story(db, fake_llm) -> None:
    leader = make_item(db, "Flood hits Phnom Penh", "Heavy rain", story_number=1, is_story_leader=True)
    make_item(db, "Flood follow-up", "Still raining", story_number=1, parent_id=leader.id)
    make_item(db, "Flood follow-up 2", "Rescue teams", story_number=1, parent_id=leader.id)
    fake_llm.set("similarity", different_story())

    _service(db, fake_llm).assign_story("Market prices", "Rice is cheaper")

    assert fake_llm.count("similarity") == 1
    assert "Flood hits Phnom Penh" in fake_llm.calls[0][1]


def test_assignment_is_idempotent_for_grouped_item(db, fake_llm) -> None:
    item = make_item(db, "Flood hits Phnom Penh", "Heavy rain")
    service = _service(db, fake_llm)

    first = service.assign_story(item.title, item.content, item_id=item.id)
    second = service.assign_story(item.title, item.content, item_id=item.id)

    assert first.story_number == second.story_number == 1
    assert db.get(StorySequence, "story").last_value == 1
    assert fake_llm.count() == 0


def test_allocation_never_reuses_numbers(db, fake_llm) -> None:
    make_item(db, "Deleted story", "gone", story_number=7, is_story_leader=True, is_deleted=True)
    db.add(CanonicalContent(story_number=9, title_en="t", content_en="c", generated_from=[], version=1))
    db.commit()
    fake_llm.set("similarity", different_story())

    assignment = _service(db, fake_llm).assign_story("Brand new", "Nothing like it")

    assert assignment.story_number == 10


def test_soft_deleting_leader_promotes_next_oldest(db, fake_llm) -> None:
    now = utcnow()
    leader = make_item(db, "First", "a", story_number=1, is_story_leader=True, scraped_at=now - timedelta(hours=3))
    second = make_item(db, "Second", "b", story_number=1, parent_id=leader.id, scraped_at=now - timedelta(hours=2))
    third = make_item(db, "Third", "c", story_number=1, parent_id=leader.id, scraped_at=now - timedelta(hours=1))
    service = _service(db, fake_llm)

    assert service.soft_delete_item(leader.id) is True

    db.refresh(second)
    db.refresh(third)
    assert second.is_story_leader is True
    assert second.parent_id is None
    assert third.parent_id == second.id
    assert db.get(Item, leader.id).is_deleted is True
    assert service.soft_delete_item(leader.id) is False


def test_matching_story_without_live_leader_gets_one(db, fake_llm) -> None:
    orphan = make_item(db, "Flood hits Phnom Penh", "Heavy rain", story_number=3)
    fake_llm.set("similarity", same_story())

    assignment = _service(db, fake_llm).assign_story("Flood update", "More rain")

    db.refresh(orphan)
    assert assignment.story_number == 3
    assert assignment.leader_id == orphan.id
    assert orphan.is_story_leader is True


def test_repeated_assignment_without_item_reuses_reserved_number(db, fake_llm) -> None:
    make_item(db, "Football final tonight", "Kick-off at 8", story_number=1, is_story_leader=True)
    fake_llm.set("similarity", different_story())
    service = _service(db, fake_llm)

    first = service.assign_story("Flood hits Phnom Penh", "Heavy rain")
    second = service.assign_story("Flood hits Phnom Penh", "Heavy rain")
    other = service.assign_story("Election day", "Voting opens")

    assert first.story_number == second.story_number == 2
    assert first.is_new_story is second.is_new_story is True
    assert other.story_number == 3
    assert db.get(StorySequence, "story").last_value == 3
    assert db.query(StoryReservation).count() == 2


@pytest.mark.parametrize("first_index", [0, 1])
def test_near_identical_items_share_a_story_in_either_order(db, fake_llm, first_index) -> None:
    texts = [
        ("Flood hits Phnom Penh", "Heavy rain flooded the streets of Phnom Penh on Monday."),
        ("Floods hit Phnom Penh", "Heavy rain flooded streets in Phnom Penh on Monday."),
    ]
    order = [texts[first_index], texts[1 - first_index]]
    sources = [make_source(db, "Channel A"), make_source(db, "Channel B")]
    items = [make_item(db, title, content, source=source) for (title, content), source in zip(order, sources)]
    fake_llm.set("similarity", same_story(0.92))
    service = _service(db, fake_llm)

    assignments = [
        service.assign_story(item.title, item.content, exclude_source_id=item.source_id, item_id=item.id)
        for item in items
    ]

    assert [assignment.story_number for assignment in assignments] == [1, 1]
    assert assignments[0].is_new_story is True
    assert assignments[1].is_new_story is False
    assert assignments[1].leader_id == items[0].id


def test_cosine_prefilter_drops_unrelated_candidates(db, fake_llm) -> None:
    make_item(db, "Rice prices fall", "Market traders sell rice cheaper", story_number=1, is_story_leader=True)
    make_item(db, "Flood hits Phnom Penh", "Heavy rain flooded streets", story_number=2, is_story_leader=True)
    fake_llm.set("similarity", same_story(0.9))
    service = _service(db, fake_llm)
    service.prefilter_min_cosine = 0.2

    assignment = service.assign_story("Phnom Penh flood", "Heavy rain again flooded streets")

    assert assignment.story_number == 2
    assert fake_llm.count("similarity") == 1
    assert "Rice prices fall" not in fake_llm.calls[0][1]
