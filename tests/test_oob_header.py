import pytest

from oob.errors import BadRequestError
from oob.oob_header import parse_oob_header


def test_parses_boot_id():
    assert parse_oob_header("uuid '977fb93c-92a5-4df0-bc36-aa332c183489';") == {
        "uuid": "977fb93c-92a5-4df0-bc36-aa332c183489",
    }


def test_parses_multiple_keys():
    assert parse_oob_header("uuid 'abc'; other 'value with spaces';") == {
        "uuid": "abc",
        "other": "value with spaces",
    }


def test_trailing_semicolon_optional():
    assert parse_oob_header("uuid 'abc'") == {"uuid": "abc"}


def test_empty_quoted_value_allowed():
    assert parse_oob_header("uuid '';") == {"uuid": ""}


def test_empty_header():
    assert parse_oob_header("") == {}
    assert parse_oob_header(" ; ;") == {}


@pytest.mark.parametrize("header", [
    "uuid abc;",
    "uuid 'abc;",
    "uuid ;",
    "uuid;",
    " 'abc';",
])
def test_malformed_header_rejected(header):
    with pytest.raises(BadRequestError) as exc:
        parse_oob_header(header)
    assert exc.value.status_code == 400
