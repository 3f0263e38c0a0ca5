"""Identifier and tracking-code generation for stage records.

Format:
  stage id:       SC{time:6}{rand:6}    e.g. SC482913K7Q2ZP
  tracking code:  TRK{time:6}{rand:5}   e.g. TRK482913A9X0M

{time:6} is the last six digits of the current epoch milliseconds and
{rand:N} draws from upper-case letters and digits.  Tracking codes are
unique in the store (enforced by a unique index); callers may also supply
their own.
"""

import secrets
import string
import time

CODE_ALPHABET = string.ascii_uppercase + string.digits

STAGE_ID_PREFIX = "SC"
TRACKING_CODE_PREFIX = "TRK"


def _time_fragment() -> str:
    millis = str(int(time.time() * 1000))
    return millis[-6:]


def _random_fragment(length: int) -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


def generate_code(prefix: str, random_length: int) -> str:
    """Build ``{prefix}{time:6}{rand:random_length}``."""
    return f"{prefix}{_time_fragment()}{_random_fragment(random_length)}"


def generate_stage_id() -> str:
    return generate_code(STAGE_ID_PREFIX, 6)


def generate_tracking_code() -> str:
    return generate_code(TRACKING_CODE_PREFIX, 5)
