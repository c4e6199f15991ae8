"""
Tests for the A2S (Source/GoldSrc) query client
"""

import asyncio
import itertools
import struct

import pytest

import gamestatpp.source as source
from gamestatpp.errors import ChallengeLoopDetectedError, InvalidHeaderError, QueryTimeoutError
from gamestatpp.source import (
    S2A_INFO,
    S2A_PLAYER,
    SourceQueryClient,
    parse_info,
    parse_players,
    parse_rules,
    validate_packet,
)

SOURCE_INFO = "11 5465737400 4d617000 4600 4700 0A00 02 10 00 64 77 00 00 3100"
GOLDSRC_INFO = "31323700 476f6c6400 4d00 4600 4700 02 10 11 64 77 00 00"


def packet(header: int, payload_hex: str = "") -> bytes:
    return b"\xff\xff\xff\xff" + bytes([header]) + bytes.fromhex(payload_hex)


def create_splits(
    header: int, payload_hex: str, goldsrc: bool, request_id: int = 1234, parts: int = 2
) -> list[bytes]:
    data = packet(header, payload_hex)
    size = -(-len(data) // parts)
    prefix = b"\xfe\xff\xff\xff" + struct.pack("<i", request_id)

    fragments = []
    for index in range(parts):
        chunk = data[index * size : (index + 1) * size]
        if goldsrc:
            meta = bytes([(index << 4) | parts])
        else:
            meta = bytes([parts, index, 0x00, 0x05])
        fragments.append(prefix + meta + chunk)
    return fragments


class FakeUdpTransport:
    """Replays scripted datagrams through the validator of each send()"""

    def __init__(self, replies):
        self.replies = list(replies)
        self.sent = []
        self.closed = False

    async def send(self, payload, port, host, timeout=2.0, validator=None):
        self.sent.append(payload)
        datagrams = self.replies.pop(0) if self.replies else []

        chunks = []
        for datagram in datagrams:
            chunks.append(datagram)
            if validator is None:
                return datagram
            frame = validator(datagram, chunks)
            if frame is not None:
                return frame
        raise QueryTimeoutError(f"Timeout waiting for response from {host}:{port}")

    def close(self):
        self.closed = True


@pytest.fixture
def fake_udp(monkeypatch):
    """Install a fake transport, call with a list of replies (each a list of datagrams)"""
    def install(replies):
        fake = FakeUdpTransport(replies)
        monkeypatch.setattr(source, "UdpTransport", lambda *args, **kwargs: fake)
        return fake

    return install


def run(coro_factory):
    async def main():
        async with SourceQueryClient("127.0.0.1", 27015) as client:
            return await coro_factory(client)

    return asyncio.run(main())


class TestInfo:
    """Test A2S_INFO replies"""

    def test_source_info(self, fake_udp):
        fake = fake_udp([[packet(0x49, SOURCE_INFO)]])
        info = run(lambda client: client.get_info())

        assert info.name == "Test"
        assert info.map == "Map"
        assert info.folder == "F"
        assert info.game == "G"
        assert info.app_id == 10
        assert info.players == 2
        assert info.max_players == 16
        assert info.server_type == "dedicated"
        assert info.environment == "windows"
        assert info.visibility == "public"
        assert info.vac == "unsecured"
        assert info.version == "1"
        assert info.port is None
        assert info.gold_src is None
        assert fake.sent == [b"\xff\xff\xff\xffTSource Engine Query\x00"]
        assert fake.closed

    def test_ipv6_literal_host(self, monkeypatch):
        families = []

        def create_transport(use_ipv6):
            families.append(use_ipv6)
            return FakeUdpTransport([[packet(0x49, SOURCE_INFO)]])

        monkeypatch.setattr(source, "UdpTransport", create_transport)

        async def main():
            for client in (SourceQueryClient("::1"), SourceQueryClient("example.com", use_ipv6=True)):
                async with client:
                    await client.get_info()

        asyncio.run(main())
        assert families == [True, True]

    def test_info_challenge_keeps_payload(self, fake_udp):
        fake = fake_udp([[packet(0x41, "DEADBEEF")], [packet(0x49, SOURCE_INFO)]])
        info = run(lambda client: client.get_info())

        assert info.name == "Test"
        assert fake.sent[1] == b"\xff\xff\xff\xffTSource Engine Query\x00\xde\xad\xbe\xef"

    def test_extra_data(self):
        buffer = bytes.fromhex(
            "49 11 5300 4d00 4600 4700 0A00 01 02 00 6c 6c 01 01 312e3000"
            "b0 8769 0100000000000001 747700"
        )
        info = parse_info(buffer)

        assert info.port == 27015
        assert info.steam_id == 0x0100000000000001
        assert info.keywords == "tw"
        assert info.server_type == "non-dedicated"
        assert info.environment == "linux"
        assert info.visibility == "private"
        assert info.vac == "secured"

    def test_the_ship(self):
        buffer = bytes.fromhex("49 07 5300 4d00 4600 4700 6009 01 02 00 64 77 00 00 01 03 b4 3100")
        info = parse_info(buffer)

        assert info.app_id == 2400
        assert info.the_ship.mode == 1
        assert info.the_ship.witnesses == 3
        assert info.the_ship.duration == 180
        assert info.version == "1"

    def test_goldsrc_info(self):
        info = parse_info(bytes([0x6D]) + bytes.fromhex(GOLDSRC_INFO))

        assert info.name == "Gold"
        assert info.protocol == 0x11
        assert info.version == "1.0"
        assert info.app_id == 0
        assert info.gold_src.address == "127"
        assert not info.gold_src.is_mod

    def test_unknown_header(self):
        with pytest.raises(InvalidHeaderError):
            parse_info(b"\x50\x00")


class TestChallenge:
    """Test the challenge handshake"""

    def test_player_challenge(self, fake_udp):
        players = packet(0x44, "01 00 426f6200 00000000 00000000")
        fake = fake_udp([[packet(0x41, "DEADBEEF")], [players]])
        result = run(lambda client: client.get_players())

        assert len(result) == 1
        assert result[0].name == "Bob"
        assert fake.sent[0] == b"\xff\xff\xff\xffU\xff\xff\xff\xff"
        assert fake.sent[1] == b"\xff\xff\xff\xffU\xde\xad\xbe\xef"

    def test_loop_detected(self, fake_udp):
        fake = fake_udp([[packet(0x41, "01020304")]] * 10)

        with pytest.raises(ChallengeLoopDetectedError):
            run(lambda client: client.get_rules())
        # first request plus five challenge answers
        assert len(fake.sent) == 6

    def test_answer_after_five_challenges(self, fake_udp):
        rules = packet(0x45, "0100 6100 6200")
        fake_udp([[packet(0x41, "01020304")]] * 5 + [[rules]])
        result = run(lambda client: client.get_rules())

        assert [(rule.name, rule.value) for rule in result] == [("a", "b")]


class TestRulesAndPlayers:
    """Test A2S_RULES and A2S_PLAYER replies"""

    def test_rules(self, fake_udp):
        fake_udp([[packet(0x45, "0200 523100 563100 523200 563200")]])
        rules = run(lambda client: client.get_rules())

        assert len(rules) == 2
        assert (rules[0].name, rules[0].value) == ("R1", "V1")
        assert (rules[1].name, rules[1].value) == ("R2", "V2")

    def test_truncated_players(self):
        buffer = bytes.fromhex("44 03 00 416c6900 05000000 0000803f 01 42")
        players = parse_players(buffer)

        assert len(players) == 1
        assert players[0].name == "Ali"
        assert players[0].score == 5
        assert players[0].duration == 1.0

    def test_unterminated_player_name(self):
        buffer = bytes.fromhex("44 02 00 416c6900 05000000 0000803f 01") + b"LongPlayerName"
        players = parse_players(buffer)

        assert [player.name for player in players] == ["Ali"]
        assert players[0].score == 5

    def test_unterminated_rule_ends_list(self):
        buffer = bytes.fromhex("45 0300 6100 6200") + b"sv_cheat"
        assert [(rule.name, rule.value) for rule in parse_rules(buffer)] == [("a", "b")]

    def test_unterminated_first_rule(self):
        # announces 65535 rules
        assert parse_rules(bytes.fromhex("45 ffff") + b"abc") == []

    def test_rule_without_value_terminator(self):
        buffer = bytes.fromhex("45 0200 6100 6200 6300") + b"open"
        assert [(rule.name, rule.value) for rule in parse_rules(buffer)] == [("a", "b")]

    def test_wrong_reply_is_ignored(self, fake_udp):
        # an INFO reply does not complete a PLAYER request
        fake_udp([[packet(0x49, SOURCE_INFO), packet(0x44, "00")]])
        assert run(lambda client: client.get_players()) == []


class TestSplitPackets:
    """Test reassembly of multi-packet replies"""

    def test_source_split_out_of_order(self, fake_udp):
        chunks = create_splits(0x49, SOURCE_INFO, goldsrc=False)
        fake_udp([[chunks[1], chunks[0]]])
        info = run(lambda client: client.get_info())

        assert info.name == "Test"

    def test_goldsrc_split(self, fake_udp):
        chunks = create_splits(0x6D, GOLDSRC_INFO, goldsrc=True)
        fake_udp([[chunks[1], chunks[0]]])
        info = run(lambda client: client.get_info())

        assert info.name == "Gold"
        assert info.gold_src.address == "127"

    def test_incomplete_split(self):
        chunks = create_splits(0x49, SOURCE_INFO, goldsrc=False)
        assert validate_packet(chunks[0], [chunks[0]], S2A_INFO) is None

    def test_duplicate_and_stray_fragments(self):
        chunks = create_splits(0x49, SOURCE_INFO, goldsrc=False)
        stray = create_splits(0x49, SOURCE_INFO, goldsrc=False, request_id=99)

        received = [chunks[0], chunks[0], stray[1]]
        assert validate_packet(stray[1], received, S2A_INFO) is None

        received.append(chunks[1])
        frame = validate_packet(chunks[1], received, S2A_INFO)
        assert frame == packet(0x49, SOURCE_INFO)

    def test_short_fragment(self):
        assert validate_packet(b"\xfe\xff\xff\xff\x01", [b"\xfe\xff\xff\xff\x01"], S2A_PLAYER) is None

    def test_unknown_envelope(self):
        assert validate_packet(b"\x00\x01\x02\x03\x04", [b"\x00\x01\x02\x03\x04"], S2A_INFO) is None

    @pytest.mark.parametrize("parts", [3, 4])
    def test_goldsrc_split_any_order(self, parts):
        chunks = create_splits(0x6D, GOLDSRC_INFO, goldsrc=True, parts=parts)

        for order in itertools.permutations(chunks):
            received = []
            for chunk in order[:-1]:
                received.append(chunk)
                assert validate_packet(chunk, received, S2A_INFO) is None
            received.append(order[-1])

            frame = validate_packet(order[-1], received, S2A_INFO)
            assert frame == packet(0x6D, GOLDSRC_INFO)

    def test_source_split_three_parts(self, fake_udp):
        chunks = create_splits(0x49, SOURCE_INFO, goldsrc=False, parts=3)
        fake_udp([[chunks[2], chunks[0], chunks[1]]])

        assert run(lambda client: client.get_info()).name == "Test"
