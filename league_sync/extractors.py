"""
Snapshot parsers: league settings, teams, rosters and draft metadata.

Snapshots are either Playwright aria snapshots (YAML-ish lines such as
`- link "Team Alpha":` / `- /url: /league/1/team/3`) or plain inner text.
Parsing is best-effort. Only settings are strict: a snapshot with neither a
team count nor a scoring type raises SettingsParseError. Everything else
returns what it can find and leaves the rest to the defaults below.
"""

import re
from typing import Optional
from urllib.parse import urljoin

from league_sync.models import (
    DraftMetadata,
    Job,
    LeagueSettings,
    RosterEntry,
    TeamMember,
)
from league_sync.stuck import snapshot_text


class SettingsParseError(ValueError):
    """The settings snapshot did not contain recognizable league settings."""


# ── Snapshot flattening ──────────────────────────────────────────────────

# `- link "Team Alpha" [ref=e12]:` → role, quoted name, trailing text
_ARIA_NODE = re.compile(r'^(?P<role>[\w-]+)\s+"(?P<name>(?:[^"\\]|\\.)*)"(?:\s*\[[^\]]*\])*:?\s*(?P<rest>.*)$')
# `- text: QB - BUF` / `- cell: 12`
_ARIA_TEXT = re.compile(r'^[\w-]+(?:\s*\[[^\]]*\])*:\s*(?P<rest>.*)$')


def flatten(snapshot) -> str:
    """Reduce an aria snapshot to plain text lines. Plain text passes through."""
    lines = []
    for raw in snapshot_text(snapshot).splitlines():
        line = raw.strip()
        if not line.startswith("- "):
            if line:
                lines.append(line)
            continue
        line = line[2:].strip()
        if not line or line.startswith("/url:") or line.startswith("/placeholder:"):
            continue
        node = _ARIA_NODE.match(line)
        if node:
            parts = [node.group("name").replace('\\"', '"'), node.group("rest").strip().strip('"')]
            line = " ".join(p for p in parts if p)
        else:
            text = _ARIA_TEXT.match(line)
            if text:
                line = text.group("rest").strip().strip('"')
        if line:
            lines.append(line)
    return "\n".join(lines)


# ── Settings ─────────────────────────────────────────────────────────────

_HEADING = re.compile(r'heading\s+"(?P<name>[^"]+)"', re.IGNORECASE)
_TITLE = re.compile(r"^title:\s*(?P<name>.+)$", re.IGNORECASE | re.MULTILINE)
_TEAM_COUNT = (
    re.compile(r"\b(?P<n>\d{1,2})[\s-]*teams?\b", re.IGNORECASE),
    re.compile(r"\b(?:league size|number of teams|(?<!playoff )teams)\s*:?\s*(?P<n>\d{1,2})\b", re.IGNORECASE),
)
_SCORING = re.compile(r"\b(?P<s>half[\s-]?ppr|0\.5[\s-]?ppr|non[\s-]?ppr|ppr|standard)\b", re.IGNORECASE)
_PLAYOFF_TEAMS = (
    re.compile(r"\b(?P<n>\d{1,2})\s*playoff teams?\b", re.IGNORECASE),
    re.compile(r"\bplayoff teams?\s*:?\s*(?P<n>\d{1,2})\b", re.IGNORECASE),
)
_WAIVER = re.compile(r"\b(?P<w>faab|waiver priority|rolling waivers|reverse standings)\b", re.IGNORECASE)
_ROSTER_SLOT = re.compile(r"\b(?P<pos>QB|RB|WR|TE|FLEX|W/R/T|K|DEF|DST|BN|BENCH|IR)\s*[:x×]\s*(?P<n>\d{1,2})\b")

_SCORING_NAMES = {"ppr": "PPR", "half ppr": "Half PPR", "halfppr": "Half PPR", "0.5 ppr": "Half PPR",
                  "non ppr": "Standard", "nonppr": "Standard", "standard": "Standard"}
_SLOT_NAMES = {"w/r/t": "flex", "dst": "def", "bn": "bench"}


def _first_int(patterns, text: str, low: int, high: int) -> Optional[int]:
    for pattern in patterns:
        for match in pattern.finditer(text):
            value = int(match.group("n"))
            if low <= value <= high:
                return value
    return None


def _scoring_name(raw: str) -> str:
    return _SCORING_NAMES.get(re.sub(r"[\s-]+", " ", raw.lower()), "PPR")


def _league_name(snapshot: str) -> Optional[str]:
    match = _HEADING.search(snapshot)
    if match:
        return match.group("name").strip()
    match = _TITLE.search(snapshot)
    if match:
        # "My League | NFL Fantasy" → "My League"
        return re.split(r"\s+[|\-–]\s+", match.group("name").strip())[0] or None
    return None


def parse_settings(snapshot, fallback_name: str = "NFL League") -> LeagueSettings:
    """Parse league settings. Raises SettingsParseError if nothing recognizable is found."""
    raw = snapshot_text(snapshot)
    if not raw.strip():
        raise SettingsParseError("empty settings snapshot")
    text = flatten(raw)

    size = _first_int(_TEAM_COUNT, text, 2, 32)
    scoring = _SCORING.search(text)
    if size is None and scoring is None:
        raise SettingsParseError("no team count or scoring type found")

    slots = []
    seen = set()
    for match in _ROSTER_SLOT.finditer(text):
        pos = match.group("pos").lower()
        pos = _SLOT_NAMES.get(pos, pos)
        if pos not in seen:
            seen.add(pos)
            slots.append((pos, int(match.group("n"))))

    defaults = LeagueSettings(name=fallback_name)
    waiver = _WAIVER.search(text)
    return LeagueSettings(
        name=_league_name(raw) or fallback_name,
        size=size or defaults.size,
        scoring_type=_scoring_name(scoring.group("s")) if scoring else defaults.scoring_type,
        roster_slots=tuple(slots) or defaults.roster_slots,
        playoff_teams=_first_int(_PLAYOFF_TEAMS, text, 1, 32),
        waiver_type=waiver.group("w").title().replace("Faab", "FAAB") if waiver else None,
    )


def default_settings(job: Job) -> LeagueSettings:
    return LeagueSettings(name=job.display_name)


# ── Members ──────────────────────────────────────────────────────────────

_TEAM_LINK = re.compile(
    r'^(?P<indent>[ \t]*)-[ \t]+link[ \t]+"(?P<name>(?:[^"\\\n]|\\.)+)"[^\n]*:[ \t]*\n'
    r'(?P=indent)[ \t]+-[ \t]+/url:[ \t]*(?P<url>\S*team\S*)[ \t]*$',
    re.MULTILINE | re.IGNORECASE,
)
_TEAM_ID = re.compile(r"team(?:s)?(?:/|Id=|_id=)(?P<id>[\w-]+)", re.IGNORECASE)
_CURRENT_USER = re.compile(r"\s*\((?:you|me)\)\s*$|\s*-\s*my team\s*$", re.IGNORECASE)


def parse_members(snapshot, job: Job) -> list:
    """Team links from an aria snapshot, in page order, de-duplicated by id."""
    text = snapshot_text(snapshot)
    members = []
    seen = set()
    for match in _TEAM_LINK.finditer(text):
        url = match.group("url")
        team_id = _TEAM_ID.search(url)
        if not team_id:
            continue
        member_id = f"{job.id}_team_{team_id.group('id')}"
        if member_id in seen:
            continue
        seen.add(member_id)

        name = match.group("name").replace('\\"', '"').strip()
        is_me = bool(_CURRENT_USER.search(name))
        members.append(TeamMember(
            id=member_id,
            name=_CURRENT_USER.sub("", name).strip(),
            locator=urljoin(job.source_locator, url),
            is_current_user=is_me,
        ))
    return members


def fallback_members(job: Job, count: int = 12) -> list:
    """Placeholder teams; the first one stands in for the current user."""
    return [
        TeamMember(
            id=f"{job.id}_team_{i}",
            name=f"{job.display_name} Team {i}",
            owner=f"Owner {i}",
            is_current_user=i == 1,
            placeholder=True,
        )
        for i in range(1, count + 1)
    ]


# ── Rosters ──────────────────────────────────────────────────────────────

_PLAYER = re.compile(
    r"(?P<name>[A-Z][\w.'\-]+(?: [A-Z][\w.'\-]+)+)\s+"
    r"(?P<pos>QB|RB|WR|TE|K|DEF)\b"
    r"(?:\s*-\s*(?P<team>[A-Z]{2,3})\b)?"
    r"(?:[ \t]+(?P<status>Questionable|Doubtful|Out|IR|Q|D|O)\b)?"
)
_STATUS_NAMES = {"q": "Questionable", "d": "Doubtful", "o": "Out", "ir": "IR"}


def parse_roster(snapshot) -> tuple:
    """Player rows such as `Josh Allen QB - BUF Q`."""
    roster = []
    seen = set()
    for match in _PLAYER.finditer(flatten(snapshot)):
        key = (match.group("name"), match.group("pos"))
        if key in seen:
            continue
        seen.add(key)
        status = match.group("status")
        roster.append(RosterEntry(
            name=match.group("name"),
            position=match.group("pos"),
            team=match.group("team") or "",
            status=_STATUS_NAMES.get(status.lower(), status) if status else "Healthy",
        ))
    return tuple(roster)


# ── Draft metadata ───────────────────────────────────────────────────────

_DRAFT_TYPE = re.compile(r"\b(?P<t>snake|auction|linear)\b(?:\s+draft)?", re.IGNORECASE)
_DRAFT_STATUS = re.compile(
    r"\bdraft\s+(?:is\s+)?(?P<s>complete[d]?|in progress|scheduled|live)\b|\b(?P<done>drafted)\b",
    re.IGNORECASE,
)
_ROUNDS = re.compile(r"\b(?P<n>\d{1,2})\s*rounds?\b", re.IGNORECASE)
_DRAFT_DATE = re.compile(
    r"\b[Dd]raft(?:\s+[Dd]ate)?\s*:?\s*(?P<date>(?:[A-Z][a-z]{2,8},?\s+)?[A-Z][a-z]{2,8}\.?\s+\d{1,2}(?:,\s*\d{4})?"
    r"(?:\s+(?:at\s+)?\d{1,2}:\d{2}\s*[AP]M)?)",
)
_STATUS_LABELS = {"complete": "Completed", "completed": "Completed", "drafted": "Completed",
                  "in progress": "In Progress", "live": "In Progress", "scheduled": "Scheduled"}


def parse_metadata(snapshot, members=()) -> Optional[DraftMetadata]:
    """Draft details, or None when the snapshot mentions none of them."""
    text = flatten(snapshot)
    draft_type = _DRAFT_TYPE.search(text)
    status = _DRAFT_STATUS.search(text)
    rounds = _ROUNDS.search(text)
    date = _DRAFT_DATE.search(text)
    if not (draft_type or status or rounds or date):
        return None

    defaults = default_metadata(members)
    if status:
        label = (status.group("s") or status.group("done")).lower()
        status_name = _STATUS_LABELS.get(label, defaults.status)
    else:
        status_name = defaults.status
    return DraftMetadata(
        draft_type=draft_type.group("t").title() if draft_type else defaults.draft_type,
        status=status_name,
        total_rounds=int(rounds.group("n")) if rounds else defaults.total_rounds,
        draft_date=date.group("date").strip() if date else None,
        order=defaults.order,
    )


def default_metadata(members=()) -> DraftMetadata:
    return DraftMetadata(order=tuple(m.id for m in members))
