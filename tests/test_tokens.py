from datetime import timedelta

import jwt

from gatepass.helpers import now_ts
from gatepass.tokens import TicketClaims, TicketCodec, render_qr_svg


def _mutate(token: str) -> str:
    header, payload, sig = token.split(".")
    i = len(payload) // 2
    repl = "A" if payload[i] != "A" else "B"
    return ".".join([header, payload[:i] + repl + payload[i + 1:], sig])


class TestTicketCodec:
    def test_round_trip(self, codec):
        issued = int(now_ts())
        token = codec.mint("b-1", "e-1", now=issued)

        claims = codec.decode(token)

        assert claims == TicketClaims("b-1", "e-1", issued)

    def test_old_credential_within_lifetime(self):
        # minted years ago, still inside a long lifetime
        long_lived = TicketCodec(secret="k", lifetime=timedelta(days=36500))
        token = long_lived.mint("b-1", "e-1", now=1_750_000_000)

        assert long_lived.decode(token).issued_at == 1_750_000_000

    def test_claims_use_camel_case_names(self, codec):
        token = codec.mint("b-1", "e-1")

        raw = jwt.decode(token, options={"verify_signature": False})

        assert raw["bookingId"] == "b-1"
        assert raw["eventId"] == "e-1"
        assert raw["exp"] - raw["iat"] == 365 * 24 * 3600

    def test_other_key_is_rejected(self, codec):
        token = TicketCodec(secret="someone-else").mint("b-1", "e-1")

        assert codec.decode(token) is None

    def test_mutated_character_is_rejected(self, codec):
        token = codec.mint("b-1", "e-1")

        assert codec.decode(_mutate(token)) is None

    def test_garbage_is_rejected(self, codec):
        assert codec.decode("not-a-token") is None
        assert codec.decode("") is None

    def test_expired_credential_is_rejected(self):
        short = TicketCodec(secret="k", lifetime=timedelta(seconds=1))
        token = short.mint("b-1", "e-1", now=1_000_000)

        assert short.decode(token) is None

    def test_missing_booking_claim_is_rejected(self, codec):
        token = jwt.encode({"eventId": "e-1", "iat": 1, "exp": 2**40},
                           "test-ticket-secret", algorithm="HS256")

        assert codec.decode(token) is None

    def test_surrounding_whitespace_from_scanner(self, codec):
        token = codec.mint("b-1", "e-1")

        assert codec.decode(f"  {token}\n").booking_id == "b-1"


def test_render_qr_svg():
    svg = render_qr_svg("some credential")

    assert "<svg" in svg
    assert "path" in svg
