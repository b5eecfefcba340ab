"""
Unit tests for the Event Normalizer.

Tests:
- Event signature parsing and topic0
- Field extraction (named, positional, default)
- Price frames and chain log entries
- Per-record skipping of unusable values
- Chain / oracle filtering of push frames
"""

from decimal import Decimal

import pytest
from eth_utils import keccak

from oracle_bridge import BridgeStats, EventKind, EventNormalizer, make_log
from oracle_bridge.normalizer import (
    DEFAULT_EVENT_SIGNATURE,
    extract_field,
    log_dedup_key,
    to_seconds,
    to_value_string,
)


ORACLE = "0x" + "ab" * 20
UPDATER = "0x" + "11" * 20


class TestEventKind:
    """Tests for EventKind.parse."""

    def test_parse_default_signature(self):
        kind = EventKind.parse(DEFAULT_EVENT_SIGNATURE)
        assert kind.name == "PriceUpdated"
        assert kind.arg_types == ("uint256", "address", "uint256")
        assert kind.arg_names == ("priceE6", "updater", "ts")
        assert kind.canonical == "PriceUpdated(uint256,address,uint256)"

    def test_topic0_is_keccak_of_canonical_signature(self):
        kind = EventKind.parse(DEFAULT_EVENT_SIGNATURE)
        expected = "0x" + keccak(text="PriceUpdated(uint256,address,uint256)").hex()
        assert kind.topic0 == expected
        assert len(kind.topic0) == 66

    def test_field_indexes_follow_names(self):
        kind = EventKind.parse("AnswerUpdated(int256 current,uint256 roundId,uint256 updatedAt)")
        assert kind.value_index == 0
        assert kind.round_index == 1
        assert kind.time_index == 2

    def test_unnamed_arguments(self):
        kind = EventKind.parse("Tick(uint256,uint256)")
        assert kind.arg_names == ("arg0", "arg1")
        assert kind.value_index == 0
        assert kind.round_index == 1
        assert kind.time_index is None

    def test_event_keyword_accepted(self):
        kind = EventKind.parse("event Ping(uint256 price);")
        assert kind.name == "Ping"

    def test_invalid_signature(self):
        with pytest.raises(ValueError):
            EventKind.parse("not a signature")

    def test_indexed_argument_rejected(self):
        with pytest.raises(ValueError):
            EventKind.parse("Ping(uint256 indexed price)")

    def test_decode_data_failure_returns_none(self):
        kind = EventKind.parse(DEFAULT_EVENT_SIGNATURE)
        assert kind.decode_data("0x1234") is None
        assert kind.decode_data("0xzz") is None
        assert kind.decode_data(None) is None


class TestFieldHelpers:
    """Tests for field extraction and numeric conversion."""

    def test_named_field_first(self):
        assert extract_field({"price": "5", "answer": "7"}, ("price", "answer"), 0) == "5"

    def test_positional_field(self):
        assert extract_field(["BTC", "5"], ("price",), 1) == "5"

    def test_default_when_missing(self):
        assert extract_field({}, ("price",), 0, default="x") == "x"
        assert extract_field(["BTC"], ("price",), 5, default="x") == "x"
        assert extract_field("scalar", ("price",), 0) is None

    def test_large_integer_kept_exact(self):
        assert to_value_string(123456789012345678901234567890) == "123456789012345678901234567890"

    def test_decimal_string_kept_as_received(self):
        assert to_value_string(" 1.50 ") == "1.50"
        assert to_value_string(Decimal("65000.10")) == "65000.10"

    def test_hex_converted_to_decimal(self):
        assert to_value_string("0x10") == "16"

    def test_unusable_values(self):
        assert to_value_string(None) is None
        assert to_value_string(True) is None
        assert to_value_string(float("inf")) is None
        assert to_value_string("NaN") is None
        assert to_value_string("Infinity") is None
        assert to_value_string("abc") is None

    def test_to_seconds(self):
        assert to_seconds("0x6553f100") == 0x6553f100
        assert to_seconds(Decimal("1700000000.9")) == 1700000000
        assert to_seconds("1700000000.5") == 1700000000
        assert to_seconds("later") is None

    def test_to_seconds_rejects_out_of_range(self):
        assert to_seconds("1e5000") is None
        assert to_seconds("1e1000000") is None
        assert to_seconds(Decimal("1E+30")) is None
        assert to_seconds("-5") is None
        assert to_seconds(2 ** 64) is None
        assert to_seconds("0x" + "f" * 40) is None
        assert to_seconds(str(2 ** 63 - 1)) == 2 ** 63 - 1

    def test_oversized_hex_value_unusable(self):
        assert to_value_string("0x" + "f" * 20000) is None

    def test_log_dedup_key(self):
        assert log_dedup_key({"transactionHash": "0xABC", "logIndex": "0x2"}) == "0xabc:2"
        assert log_dedup_key({"transactionHash": "0xabc"}) is None
        assert log_dedup_key({"logIndex": 1}) is None


class TestPriceFrames:
    """Tests for push price frames."""

    @pytest.fixture
    def stats(self):
        return BridgeStats()

    @pytest.fixture
    def normalizer(self, stats):
        return EventNormalizer(feed_id="ws", clock=lambda: 1234.9, stats=stats)

    def test_named_and_positional_items(self, normalizer):
        frame = {
            "type": "prices",
            "seq": 7,
            "data": [
                {"symbol": "BTC", "priceE6": "65000123456", "ts": 1700000000},
                ["ETH", Decimal("3500.25"), 1700000001],
            ],
        }
        events = normalizer.normalize(frame)

        assert [e.key for e in events] == ["ws:7:0", "ws:7:1"]
        assert events[0].update.symbol_or_round == "BTC"
        assert events[0].update.value == "65000123456"
        assert events[0].update.observed_at == 1700000000
        assert events[1].update.value == "3500.25"
        assert events[1].update.source_id == "ws"

    def test_item_sequence_preferred(self, normalizer):
        frame = {"type": "prices", "source": "pyth", "seq": 1,
                 "data": [{"symbol": "SOL", "price": "200", "seq": 99}]}
        events = normalizer.normalize(frame)
        assert events[0].key == "pyth:99"
        assert events[0].update.source_id == "pyth"

    def test_no_identifier_means_no_key(self, normalizer):
        events = normalizer.normalize({"type": "prices", "data": [["BTC", 1]]})
        assert events[0].key is None

    def test_missing_timestamp_uses_clock(self, normalizer):
        events = normalizer.normalize({"type": "prices", "data": [["BTC", 1]]})
        assert events[0].update.observed_at == 1234

    def test_out_of_range_timestamp_uses_clock(self, normalizer):
        frame = {
            "type": "prices",
            "data": [
                ["BTC", "1", "1e5000"],
                {"symbol": "ETH", "price": "2", "ts": "1e1000000"},
            ],
        }
        events = normalizer.normalize(frame)
        assert [e.update.observed_at for e in events] == [1234, 1234]

    def test_bad_item_skipped_alone(self, normalizer, stats):
        frame = {
            "type": "prices",
            "data": [
                {"symbol": "SOL"},
                {"symbol": "BTC", "price": "NaN"},
                "junk",
                {"symbol": "ETH", "price": "3500"},
            ],
        }
        events = normalizer.normalize(frame)
        assert [e.update.symbol_or_round for e in events] == ["ETH"]
        assert stats.records_skipped == 3

    def test_frame_without_data_list(self, normalizer, stats):
        assert normalizer.normalize({"type": "prices", "data": "nope"}) == []
        assert stats.records_skipped == 1


class TestLogEntries:
    """Tests for chain log entries."""

    @pytest.fixture
    def stats(self):
        return BridgeStats()

    @pytest.fixture
    def kind(self):
        return EventKind.parse(DEFAULT_EVENT_SIGNATURE)

    @pytest.fixture
    def normalizer(self, kind, stats):
        chainlink = EventKind.parse("AnswerUpdated(int256 current,uint256 roundId,uint256 updatedAt)")
        ping = EventKind.parse("Ping(uint256 price)")
        return EventNormalizer([kind, chainlink, ping], clock=lambda: 42.0, stats=stats)

    def test_abi_encoded_log(self, normalizer, kind):
        log = make_log(kind, ORACLE, [1234567, UPDATER, 1700000000], block_number=50, log_index=2)
        events = normalizer.normalize(log)

        assert len(events) == 1
        event = events[0]
        assert event.key == f"{log['transactionHash'].lower()}:2"
        assert event.update.source_id == ORACLE
        assert event.update.value == "1234567"
        assert event.update.symbol_or_round == "1700000000"
        assert event.update.observed_at == 1700000000

    def test_named_args(self, normalizer, kind):
        log = {
            "address": ORACLE.upper().replace("0X", "0x"),
            "topics": [kind.topic0],
            "transactionHash": "0xAA",
            "logIndex": 3,
            "args": {"priceE6": "123456789012345678901234567890", "ts": 1700000001},
        }
        event = normalizer.normalize(log)[0]
        assert event.update.value == "123456789012345678901234567890"
        assert event.update.source_id == ORACLE
        assert event.key == "0xaa:3"

    def test_positional_args(self, normalizer, kind):
        log = {"topics": [kind.topic0], "transactionHash": "0x1", "logIndex": 0,
               "args": [5, UPDATER, 7]}
        event = normalizer.normalize(log)[0]
        assert event.update.value == "5"
        assert event.update.symbol_or_round == "7"

    def test_match_by_event_name(self, normalizer):
        log = {
            "eventName": "AnswerUpdated",
            "address": "0xFeed",
            "transactionHash": "0xAB",
            "logIndex": "0x1",
            "args": {"current": 250000000000, "roundId": 18, "updatedAt": 1700000100},
        }
        event = normalizer.normalize(log)[0]
        assert event.update.value == "250000000000"
        assert event.update.symbol_or_round == "18"
        assert event.update.observed_at == 1700000100
        assert event.update.source_id == "0xfeed"
        assert event.key == "0xab:1"

    def test_round_and_time_fall_back_to_block(self, normalizer):
        log = {
            "eventName": "Ping",
            "transactionHash": "0x2",
            "logIndex": 0,
            "blockNumber": "0x20",
            "blockTimestamp": "0x6553f100",
            "args": {"price": "5"},
        }
        event = normalizer.normalize(log)[0]
        assert event.update.symbol_or_round == "32"
        assert event.update.observed_at == 0x6553f100

    def test_time_falls_back_to_clock(self, normalizer):
        log = {"eventName": "Ping", "transactionHash": "0x2", "logIndex": 0, "args": {"price": "5"}}
        assert normalizer.normalize(log)[0].update.observed_at == 42

    def test_subscription_notification(self, normalizer, kind):
        log = make_log(kind, ORACLE, [99, UPDATER, 1700000000], block_number=10)
        frame = {"jsonrpc": "2.0", "method": "eth_subscription",
                 "params": {"subscription": "0x1", "result": log}}
        events = normalizer.normalize(frame)
        assert len(events) == 1
        assert events[0].update.value == "99"

    def test_removed_log_skipped(self, normalizer, kind, stats):
        log = make_log(kind, ORACLE, [1, UPDATER, 2], block_number=1)
        log["removed"] = True
        assert normalizer.normalize(log) == []
        assert stats.records_skipped == 1

    def test_unknown_topic_skipped(self, normalizer, stats):
        log = {"topics": ["0x" + "00" * 32], "transactionHash": "0x1", "logIndex": 0, "data": "0x"}
        assert normalizer.normalize(log) == []
        assert stats.records_skipped == 1

    def test_undecodable_data_skipped(self, normalizer, kind, stats):
        log = {"topics": [kind.topic0], "transactionHash": "0x1", "logIndex": 0, "data": "0x1234"}
        assert normalizer.normalize(log) == []
        assert stats.records_skipped == 1

    def test_non_finite_value_skipped(self, normalizer, kind, stats):
        log = {"topics": [kind.topic0], "transactionHash": "0x1", "logIndex": 0,
               "args": {"priceE6": "NaN", "ts": 1}}
        assert normalizer.normalize(log) == []
        assert stats.records_skipped == 1


class TestFrameFilter:
    """Frames tagged with a chain or oracle the bridge does not track."""

    @pytest.fixture
    def stats(self):
        return BridgeStats()

    @pytest.fixture
    def normalizer(self, stats):
        return EventNormalizer(chain="Base", oracles=[ORACLE.upper().replace("0X", "0x")], stats=stats)

    def frame(self, **tags):
        return dict({"type": "prices", "data": [["BTC", "1", 1]]}, **tags)

    def test_other_chain_dropped(self, normalizer, stats):
        assert normalizer.normalize(self.frame(chain="arbitrum")) == []
        assert stats.frames_filtered == 1
        assert stats.records_skipped == 0

    def test_matching_chain_case_insensitive(self, normalizer):
        assert len(normalizer.normalize(self.frame(chain="BASE"))) == 1

    def test_untracked_oracle_dropped(self, normalizer, stats):
        assert normalizer.normalize(self.frame(oracle="0x" + "99" * 20)) == []
        assert stats.frames_filtered == 1

    def test_tracked_oracle_accepted(self, normalizer):
        assert len(normalizer.normalize(self.frame(chain="base", oracle=ORACLE))) == 1

    def test_untagged_frame_accepted(self, normalizer, stats):
        assert len(normalizer.normalize(self.frame())) == 1
        assert stats.frames_filtered == 0

    def test_no_oracle_list_accepts_any_oracle(self):
        normalizer = EventNormalizer(chain="base")
        assert len(normalizer.normalize(self.frame(oracle="0x" + "99" * 20))) == 1


class TestOtherPayloads:
    """Control frames and non-object payloads."""

    def test_control_frame_ignored(self):
        stats = BridgeStats()
        normalizer = EventNormalizer(stats=stats)
        assert normalizer.normalize({"jsonrpc": "2.0", "id": 1, "result": "0xsub"}) == []
        assert stats.records_skipped == 0

    def test_non_object_payload_skipped(self):
        stats = BridgeStats()
        normalizer = EventNormalizer(stats=stats)
        assert normalizer.normalize([1, 2, 3]) == []
        assert stats.records_skipped == 1
