"""Tests for the drand client and the winning-index derivation."""

import httpx
import pytest

from errors import BeaconError
from factories import RANDOMNESS
from randomness import DrandBeacon, winning_ticket_index


class TestWinningTicketIndex:
    def test_first_eight_bytes_big_endian(self) -> None:
        assert winning_ticket_index(RANDOMNESS, 5) == 7 % 5
        assert winning_ticket_index(RANDOMNESS, 100) == 7

    def test_deterministic(self) -> None:
        assert winning_ticket_index(RANDOMNESS, 13) == winning_ticket_index(RANDOMNESS, 13)

    def test_matches_u64_of_prefix(self) -> None:
        rnd = "a3f1c2d4e5f60718" + "9a" * 24
        assert winning_ticket_index(rnd, 37) == 0xA3F1C2D4E5F60718 % 37
        # flipping a prefix byte moves the result
        assert winning_ticket_index("a3f1c2d4e5f60719" + "9a" * 24, 37) != winning_ticket_index(rnd, 37)

    def test_only_prefix_matters(self) -> None:
        a = "0102030405060708" + "00" * 24
        b = "0102030405060708" + "ff" * 24
        assert winning_ticket_index(a, 97) == winning_ticket_index(b, 97)

    def test_short_input_is_right_padded(self) -> None:
        # 0x0100000000000000 == 2**56, and 2**56 % 3 == 1
        assert winning_ticket_index("01", 3) == 1
        assert winning_ticket_index("01", 2**56 + 1) == 2**56

    def test_single_ticket_always_wins(self) -> None:
        assert winning_ticket_index("ffffffffffffffff", 1) == 0

    @pytest.mark.parametrize("sold", [0, -1])
    def test_rejects_non_positive_sold(self, sold) -> None:
        with pytest.raises(ValueError):
            winning_ticket_index(RANDOMNESS, sold)

    def test_rejects_empty_randomness(self) -> None:
        with pytest.raises(ValueError):
            winning_ticket_index("", 3)

    def test_rejects_non_hex(self) -> None:
        with pytest.raises(ValueError):
            winning_ticket_index("zz", 3)


def _beacon(handler) -> DrandBeacon:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="https://drand.test")
    return DrandBeacon("https://drand.test", client=client)


class TestDrandBeacon:
    async def test_latest(self) -> None:
        def handler(request):
            assert request.url.path == "/public/latest"
            return httpx.Response(200, json={"round": 4242, "randomness": RANDOMNESS, "signature": "abcd"})

        s = await _beacon(handler).latest()
        assert (s.round, s.randomness, s.signature) == (4242, RANDOMNESS, "abcd")

    @pytest.mark.parametrize("missing", ["round", "randomness", "signature"])
    async def test_missing_field(self, missing) -> None:
        body = {"round": 1, "randomness": RANDOMNESS, "signature": "abcd"}
        body.pop(missing)
        with pytest.raises(BeaconError):
            await _beacon(lambda r: httpx.Response(200, json=body)).latest()

    async def test_http_error(self) -> None:
        with pytest.raises(BeaconError):
            await _beacon(lambda r: httpx.Response(503)).latest()

    async def test_timeout(self) -> None:
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(BeaconError):
            await _beacon(handler).latest()
