"""Booking reference codes.

Codes are both the customer's receipt reference and, together with the
holder's email, the authorization to cancel, so they come from ``secrets``
and never from a counter.
"""
import secrets

# No 0/O, 1/I/L.
UNAMBIGUOUS_ALPHABET = 'ABCDEFGHJKMNPQRSTUVWXYZ23456789'
DEFAULT_PREFIX = 'LP'
DEFAULT_LENGTH = 12
MAX_CODE_LENGTH = 32


def generate_confirmation_code(prefix=DEFAULT_PREFIX, length=DEFAULT_LENGTH):
    """Return ``PREFIX-XXXXXXXXXXXX`` drawn from the unambiguous alphabet."""
    if length < 6:
        raise ValueError('Confirmation codes need at least 6 random characters')
    body = ''.join(secrets.choice(UNAMBIGUOUS_ALPHABET) for _ in range(length))
    return f'{prefix}-{body}' if prefix else body


def normalize_confirmation_code(raw_code):
    """Trim and upper-case a user-supplied code; None when unusable."""
    code = str(raw_code or '').strip().upper()
    if not code or len(code) > MAX_CODE_LENGTH:
        return None
    return code


def candidate_codes(raw_code, prefix=DEFAULT_PREFIX):
    """Codes to try for a lookup: as given, then with the prefix prepended."""
    code = normalize_confirmation_code(raw_code)
    if not code:
        return []
    candidates = [code]
    marker = f'{prefix}-' if prefix else ''
    if marker and not code.startswith(marker):
        candidates.append(f'{marker}{code}')
    return candidates
