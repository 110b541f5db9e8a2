"""Per-provider status classification tables.

Each table lists the lower-cased raw status tokens a provider emits for
every canonical status. Tokens must be unique across the buckets of one
table; adding a provider means adding a table here, not editing the
classifier.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field


@dataclass(frozen=True)
class StatusTable:
    provider: str
    canceled: frozenset[str]
    postponed: frozenset[str]
    final: frozenset[str]
    live: frozenset[str]
    scheduled: frozenset[str]
    # Period/quarter/half/overtime codes not enumerated above
    period_pattern: re.Pattern[str] = field(
        default=re.compile(r"^(q[1-4]|p[1-3]|in[1-9]|[12]h|ot\d?|et|so)$")
    )

    def overlapping_tokens(self) -> set[str]:
        """Tokens listed in more than one bucket. Empty for a valid table."""
        buckets = [self.canceled, self.postponed, self.final, self.live, self.scheduled]
        seen: set[str] = set()
        duplicates: set[str] = set()
        for bucket in buckets:
            duplicates |= seen & bucket
            seen |= bucket
        return duplicates


API_SPORTS = StatusTable(
    provider="api-sports",
    canceled=frozenset({
        "canc", "canceled", "cancelled", "abd", "abdn", "abandoned", "void", "voided",
    }),
    postponed=frozenset({
        "pst", "postponed", "post", "delayed", "susp", "suspended",
        "int",  # interrupted
    }),
    final=frozenset({
        # Soccer
        "ft", "aet", "pen", "aw", "wo", "awd",
        # American sports
        "final", "f", "f/ot", "f/so", "aot", "ap", "ended", "finished", "completed", "over",
    }),
    live=frozenset({
        # Soccer
        "1h", "2h", "ht", "et", "bt", "p", "live",
        # Basketball / American football
        "q1", "q2", "q3", "q4", "ot",
        # Hockey
        "p1", "p2", "p3", "pt",
        # Baseball
        "in1", "in2", "in3", "in4", "in5", "in6", "in7", "in8", "in9", "ie",
        # Generic
        "in progress", "inprogress", "inp", "playing", "started",
    }),
    scheduled=frozenset({
        "ns", "not started", "scheduled", "tbd", "upcoming", "pre", "prematch",
    }),
)

SPORTSDATAIO = StatusTable(
    provider="sportsdataio",
    canceled=frozenset({"canceled", "cancelled", "forfeit", "notnecessary"}),
    postponed=frozenset({"postponed", "delayed", "suspended"}),
    final=frozenset({"final", "f/ot", "f/so", "closed"}),
    live=frozenset({"inprogress", "in progress", "halftime", "break"}),
    scheduled=frozenset({"scheduled", "tbd", "awaiting"}),
)

GENERIC = StatusTable(
    provider="generic",
    canceled=frozenset({"canceled", "cancelled", "abandoned", "void"}),
    postponed=frozenset({"postponed", "delayed", "suspended"}),
    final=frozenset({"final", "ft", "ended", "finished", "completed", "closed"}),
    live=frozenset({"live", "in progress", "inprogress", "playing", "halftime"}),
    scheduled=frozenset({"scheduled", "not started", "ns", "tbd", "upcoming", "pre"}),
)

STATUS_TABLES: dict[str, StatusTable] = {
    table.provider: table for table in (API_SPORTS, SPORTSDATAIO, GENERIC)
}


def get_status_table(provider: str | None) -> StatusTable:
    """Return the provider's table, falling back to the generic vocabulary."""
    if not provider:
        return GENERIC
    return STATUS_TABLES.get(provider.strip().lower(), GENERIC)
