import base64

import pytest
from cryptography.fernet import Fernet

from errors import InvalidCursor
from pagination import CURSOR_TTL_SECONDS, CursorCodec, PageParams
from tests.conftest import FakeClock


@pytest.fixture
def codec(clock):
    return CursorCodec(Fernet.generate_key(), clock=clock)


def test_cursor_round_trip(codec):
    token = codec.encode(200, 100)
    assert isinstance(token, str)
    assert "offset" not in token
    assert codec.decode(token) == PageParams(200, 100)


def test_cursor_accepted_just_inside_ttl(codec, clock):
    token = codec.encode(100, 100)
    clock.advance(59 * 60)
    assert codec.decode(token).offset == 100


def test_cursor_rejected_after_ttl(codec, clock):
    token = codec.encode(100, 100)
    clock.advance(61 * 60)
    with pytest.raises(InvalidCursor) as excinfo:
        codec.decode(token)
    assert "expired" in excinfo.value.message
    assert excinfo.value.to_payload()["metadata"]["reason"] == "invalidCursor"


def test_cursor_ttl_is_one_hour():
    assert CURSOR_TTL_SECONDS == 3600


def test_tampered_cursor_rejected(codec):
    token = codec.encode(0, 100)
    raw = bytearray(base64.urlsafe_b64decode(token))
    raw[-5] ^= 0xFF
    tampered = base64.urlsafe_b64encode(bytes(raw)).decode("ascii")
    with pytest.raises(InvalidCursor):
        codec.decode(tampered)


@pytest.mark.parametrize("token", ["", "not-a-cursor", "eyJvZmZzZXQiOjEwMH0="])
def test_malformed_cursor_rejected(codec, token):
    with pytest.raises(InvalidCursor):
        codec.decode(token)


def test_cursor_from_other_secret_rejected(clock):
    issued = CursorCodec(Fernet.generate_key(), clock=clock).encode(0, 100)
    with pytest.raises(InvalidCursor):
        CursorCodec(Fernet.generate_key(), clock=clock).decode(issued)


def test_encode_rejects_invalid_state(codec):
    with pytest.raises(ValueError):
        codec.encode(-1, 100)
    with pytest.raises(ValueError):
        codec.encode(0, 0)


def test_parse_params_first_page_and_cursor(codec):
    assert codec.parse_params({}, 100) == PageParams(0, 100)
    assert codec.parse_params({"cursor": None}, 20) == PageParams(0, 20)
    token = codec.encode(40, 20)
    assert codec.parse_params({"cursor": token}, 100) == PageParams(40, 20)


def test_full_page_issues_next_cursor(codec):
    params = PageParams(0, 3)
    page = codec.paginate(["a", "b", "c"], 3, params)
    assert page.count == 3
    assert page.next_cursor
    assert codec.decode(page.next_cursor) == PageParams(3, 3)


def test_short_page_has_no_next_cursor(codec):
    page = codec.paginate(["a"], 1, PageParams(3, 3))
    payload = page.to_dict()
    assert payload == {"items": ["a"], "count": 1}


def test_exact_multiple_ends_with_empty_page(codec):
    data = list(range(6))
    params = PageParams(0, 3)
    pages = []
    while True:
        chunk = data[params.offset: params.offset + params.page_size]
        page = codec.paginate(chunk, len(chunk), params)
        pages.append(page)
        if not page.next_cursor:
            break
        params = codec.decode(page.next_cursor)
    assert [p.count for p in pages] == [3, 3, 0]


def test_filtered_items_keep_raw_page_count(codec):
    # Two of three upstream rows filtered out, but the page was full upstream
    page = codec.paginate(["kept"], 3, PageParams(0, 3), {"query": "x"})
    payload = page.to_dict()
    assert payload["count"] == 1
    assert payload["query"] == "x"
    assert "nextCursor" in payload


def test_codec_uses_injected_clock():
    clock = FakeClock(now=10_000)
    codec = CursorCodec(Fernet.generate_key(), clock=clock)
    token = codec.encode(0, 10)
    clock.advance(CURSOR_TTL_SECONDS + 1)
    with pytest.raises(InvalidCursor):
        codec.decode(token)
