from typing import Dict

from oob.errors import BadRequestError

OOB_HEADER = "X-OOB"
BOOT_ID_KEY = "uuid"


def parse_oob_header(header: str) -> Dict[str, str]:
    """Parse a CSP-like ``X-OOB`` header.

    Example: ``uuid '977fb93c-92a5-4df0-bc36-aa332c183489'; other 'x'``
    """
    results: Dict[str, str] = {}
    for part in header.split(";"):
        pair = part.strip()
        if not pair:
            continue
        space = pair.find(" ")
        if space <= 0:
            raise BadRequestError("Malformed X-OOB header - no space found")
        key = pair[:space]
        quoted = pair[space + 1:].strip()
        if not quoted:
            raise BadRequestError("Malformed X-OOB header - value missing")
        if len(quoted) < 2 or not quoted.startswith("'") or not quoted.endswith("'"):
            raise BadRequestError("Malformed X-OOB header - value not quoted")
        results[key] = quoted[1:-1]
    return results
