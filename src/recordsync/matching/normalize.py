"""String normalization used by matching.

Both helpers are pure, idempotent and map None/empty input to "".
"""

from __future__ import annotations

import re

_NON_ALNUM = re.compile(r"[^a-z0-9]")
_URL_PREFIX = re.compile(r"^(https?://)?(www\.)?")


def normalize(value: str | None) -> str:
    """Lower-case, trim and drop every character outside ``[a-z0-9]``.

    >>> normalize("  Acme, Inc. ")
    'acmeinc'
    """
    if not value:
        return ""
    return _NON_ALNUM.sub("", value.strip().lower())


def extract_domain(email_or_url: str | None) -> str:
    """Return the domain part of an email address or URL.

    Email addresses yield the text after the last ``@``. URLs lose their
    scheme and leading ``www.`` and are cut at the first ``/``.

    >>> extract_domain("jane@acme.com")
    'acme.com'
    >>> extract_domain("https://www.acme.com/about")
    'acme.com'
    """
    if not email_or_url:
        return ""
    s = email_or_url.strip().lower()
    if "@" in s:
        return s.rsplit("@", 1)[-1]
    return _URL_PREFIX.sub("", s, count=1).split("/")[0]
