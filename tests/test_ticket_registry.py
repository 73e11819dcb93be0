import time
from types import SimpleNamespace

import pytest
from conftest import OTHER_USER_ID, USER_ID

from main import Assistant, TicketRegistry, parse_ticket_owner

CHANNEL_ID = 7000
OTHER_CHANNEL_ID = 7001
APPLICATION_CATEGORY = 900
HELP_CATEGORY = 901


def test_lookup_returns_opened_channel(registry):
    registry.open(USER_ID, CHANNEL_ID)

    assert registry.lookup(USER_ID) == CHANNEL_ID
    assert registry.lookup(OTHER_USER_ID) is None
    assert USER_ID in registry
    assert len(registry) == 1


def test_open_twice_keeps_last_channel(registry):
    registry.open(USER_ID, CHANNEL_ID)
    registry.open(USER_ID, OTHER_CHANNEL_ID)

    assert registry.lookup(USER_ID) == OTHER_CHANNEL_ID
    assert len(registry) == 1


def test_lookup_after_close_is_absent(registry):
    registry.open(USER_ID, CHANNEL_ID)
    registry.close(USER_ID)

    assert registry.lookup(USER_ID) is None
    assert USER_ID not in registry


def test_close_unknown_subject_is_a_noop(registry):
    registry.close(USER_ID)

    assert len(registry) == 0


def test_rebuild_discards_previous_state(registry):
    registry.open(USER_ID, CHANNEL_ID)
    registry.reserve(OTHER_USER_ID)

    registry.rebuild([(OTHER_USER_ID, OTHER_CHANNEL_ID)])

    assert registry.lookup(USER_ID) is None
    assert registry.lookup(OTHER_USER_ID) == OTHER_CHANNEL_ID
    assert len(registry) == 1
    assert registry.reserve(USER_ID) is True


def test_reserve_blocks_second_request(registry):
    assert registry.reserve(USER_ID) is True
    assert registry.reserve(USER_ID) is False
    assert registry.reserve(OTHER_USER_ID) is True


def test_reserve_fails_while_ticket_is_open(registry):
    registry.open(USER_ID, CHANNEL_ID)

    assert registry.reserve(USER_ID) is False

    registry.close(USER_ID)
    assert registry.reserve(USER_ID) is True


def test_release_frees_reservation(registry):
    registry.reserve(USER_ID)
    registry.release(USER_ID)

    assert registry.lookup(USER_ID) is None
    assert registry.reserve(USER_ID) is True


def test_open_consumes_reservation(registry):
    registry.reserve(USER_ID)
    registry.open(USER_ID, CHANNEL_ID)
    registry.close(USER_ID)

    assert registry.reserve(USER_ID) is True


def test_reservation_expires():
    registry = TicketRegistry(reservation_ttl=0.01)
    registry.reserve(USER_ID)

    time.sleep(0.05)

    assert registry.reserve(USER_ID) is True


def test_subject_for_finds_channel_owner(registry):
    registry.open(USER_ID, CHANNEL_ID)
    registry.open(OTHER_USER_ID, OTHER_CHANNEL_ID)

    assert registry.subject_for(OTHER_CHANNEL_ID) == OTHER_USER_ID
    assert registry.subject_for(12345) is None


def test_scan_ticket_channels_reads_owner_from_topic():
    channels = [
        SimpleNamespace(id=CHANNEL_ID, parent_id=APPLICATION_CATEGORY, topic=str(USER_ID)),
        SimpleNamespace(id=OTHER_CHANNEL_ID, parent_id=HELP_CATEGORY, topic=str(OTHER_USER_ID)),
        SimpleNamespace(id=7002, parent_id=HELP_CATEGORY, topic="Ask anything"),
        SimpleNamespace(id=7003, parent_id=HELP_CATEGORY, topic=None),
        SimpleNamespace(id=7004, parent_id=123, topic="42"),
        SimpleNamespace(id=7005),
        SimpleNamespace(id=7006, parent_id=HELP_CATEGORY, topic="²"),
        SimpleNamespace(id=7007, parent_id=HELP_CATEGORY, topic="١٢٣"),
    ]

    entries = Assistant.scan_ticket_channels(
        channels, frozenset((APPLICATION_CATEGORY, HELP_CATEGORY))
    )

    assert entries == {USER_ID: CHANNEL_ID, OTHER_USER_ID: OTHER_CHANNEL_ID}


@pytest.mark.parametrize(
    "topic, expected",
    [
        (str(USER_ID), USER_ID),
        (f" {USER_ID}\n", USER_ID),
        ("²", None),
        ("١٢٣", None),
        ("-10", None),
        ("", None),
        (None, None),
    ],
)
def test_parse_ticket_owner(topic, expected):
    assert parse_ticket_owner(topic) == expected
