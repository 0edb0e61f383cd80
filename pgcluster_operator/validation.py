"""
Semantic checks on a ClusterSpec.

Structural validation belongs to the admission layer; what is left here are
states no retry can fix: duplicate names and cron schedules that either do
not parse or can never fire.
"""
import re
from collections import Counter

from pgcluster_operator.errors import SpecInvalid
from pgcluster_operator.models import BackupType, ClusterSpec

# Regex for a basic 5-field cron expression
_CRON_RE = re.compile(
    r"^\s*"
    r"(\S+)\s+"   # minute
    r"(\S+)\s+"   # hour
    r"(\S+)\s+"   # day of month
    r"(\S+)\s+"   # month
    r"(\S+)"      # day of week
    r"\s*$"
)

_MACROS = {
    "@yearly": "0 0 1 1 *",
    "@annually": "0 0 1 1 *",
    "@monthly": "0 0 1 * *",
    "@weekly": "0 0 * * 0",
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@hourly": "0 * * * *",
}

_MONTHS = {name: i for i, name in enumerate(
    ["JAN", "FEB", "MAR", "APR", "MAY", "JUN", "JUL", "AUG", "SEP", "OCT", "NOV", "DEC"], start=1)}
_DAYS = {name: i for i, name in enumerate(["SUN", "MON", "TUE", "WED", "THU", "FRI", "SAT"])}

# (name, min, max, symbolic names)
_FIELDS = [
    ("minute", 0, 59, {}),
    ("hour", 0, 23, {}),
    ("day of month", 1, 31, {}),
    ("month", 1, 12, _MONTHS),
    ("day of week", 0, 7, _DAYS),
]

# Longest month lengths; February counts leap years.
_MONTH_DAYS = {1: 31, 2: 29, 3: 31, 4: 30, 5: 31, 6: 30, 7: 31, 8: 31, 9: 30, 10: 31, 11: 30, 12: 31}


def validate_cluster(cluster: ClusterSpec) -> None:
    """Raise SpecInvalid if the cluster can never be reconciled as written."""
    _require_unique("instance set", [s.name for s in cluster.instance_sets])
    _require_unique("backup repository", [r.name for r in cluster.backups.repos])
    for repo in cluster.backups.repos:
        if repo.backup_schedules is None:
            continue
        for backup_type in BackupType:
            schedule = repo.backup_schedules.get(backup_type)
            if schedule is not None:
                parse_cron(schedule, where=f"repo {repo.name} {backup_type.value} backup")


def _require_unique(what: str, names: list) -> None:
    dupes = sorted(name for name, count in Counter(names).items() if count > 1)
    if dupes:
        raise SpecInvalid(f"Duplicate {what} name(s): {', '.join(dupes)}")


def parse_cron(expr: str, where: str = "schedule") -> list:
    """
    Parse a cron expression into one set of allowed values per field.

    Accepts the 5-field form (ranges, steps, lists, month and weekday names,
    ``?`` for day fields) and the ``@yearly``-style macros.
    ``@every <duration>`` is not accepted, although the CronJob controller
    would run it; backup schedules must be calendar expressions.
    Raises SpecInvalid when the expression is malformed or can never fire.
    """
    text = expr.strip()
    if text.lower().startswith("@every"):
        raise SpecInvalid(f"Unsupported cron schedule for {where}: '{expr}' (@every is not allowed)")
    text = _MACROS.get(text.lower(), text)
    m = _CRON_RE.match(text)
    if m is None:
        raise SpecInvalid(f"Invalid cron schedule for {where}: '{expr}'")

    tokens = list(m.groups())
    fields = []
    for token, (name, lo, hi, names) in zip(tokens, _FIELDS):
        if token == "?" and name in ("day of month", "day of week"):
            token = "*"
        try:
            fields.append(_parse_field(token, lo, hi, names))
        except ValueError as e:
            raise SpecInvalid(f"Invalid cron schedule for {where}: '{expr}' ({name}: {e})") from e

    # Sunday may be written as 0 or 7.
    if 7 in fields[4]:
        fields[4] = (fields[4] - {7}) | {0}

    dow_restricted = tokens[4] not in ("*", "?")
    if not dow_restricted and not _has_valid_day(fields[2], fields[3]):
        raise SpecInvalid(f"Cron schedule for {where} can never fire: '{expr}'")
    return fields


def _has_valid_day(days: set, months: set) -> bool:
    return any(day <= _MONTH_DAYS[month] for month in months for day in days)


def _parse_field(token: str, lo: int, hi: int, names: dict) -> set:
    values = set()
    for part in token.split(","):
        if not part:
            raise ValueError("empty list element")
        step = 1
        stepped = "/" in part
        if stepped:
            part, step_text = part.split("/", 1)
            step = int(step_text)
            if step <= 0:
                raise ValueError(f"step must be positive, got {step}")
        if part == "*":
            start, end = lo, hi
        elif "-" in part:
            first, last = part.split("-", 1)
            start, end = _value(first, names), _value(last, names)
        else:
            start = _value(part, names)
            end = hi if stepped else start
        if not (lo <= start <= hi and lo <= end <= hi):
            raise ValueError(f"{part} out of range {lo}-{hi}")
        if start > end:
            raise ValueError(f"range {part} is backwards")
        values.update(range(start, end + 1, step))
    return values


def _value(text: str, names: dict) -> int:
    upper = text.upper()
    if upper in names:
        return names[upper]
    return int(text)
