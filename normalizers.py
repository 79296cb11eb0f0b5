"""
Clinic Ingestion Service — Field Normalizers
normalizers.py

Pure functions turning raw spreadsheet cells into canonical values.
Remedii exports are produced in Malaysia, so timestamps without an explicit
offset are read as UTC+8.
"""
from __future__ import annotations
import re
from datetime import date, datetime, timedelta, timezone
from typing import Any, NamedTuple, Optional

CLINIC_TZ = timezone(timedelta(hours=8))

# ============================================================
# Text & Identifiers
# ============================================================

def _as_text(raw: Any) -> str:
    if raw is None:
        return ''
    if isinstance(raw, float) and raw != raw:  # NaN from pandas
        return ''
    return str(raw)


def clean_text(raw: Any) -> Optional[str]:
    """Trimmed text, or None for blank cells."""
    t = _as_text(raw).strip()
    return t or None


def normalize_phone_number(raw: Any) -> Optional[str]:
    """'=("012) 345-6789"' -> '0123456789'."""
    t = _as_text(raw)
    t = re.sub(r'[\s\-()]', '', t)
    t = re.sub(r'^=', '', t)
    t = t.replace('"', '').replace("'", '')
    return t.strip() or None


def normalize_lead_phone(raw: Any) -> Optional[str]:
    """Lead exports: keep digits and '+' only."""
    cleaned = re.sub(r'[^\d+]', '', _as_text(raw))
    return cleaned or None


def clean_id_no(raw: Any) -> Optional[str]:
    """Strip the '="900101-14-5678"' artifact Excel leaves on IC numbers."""
    t = _as_text(raw).strip()
    t = re.sub(r'^="', '', t)
    t = re.sub(r'"$', '', t)
    return t.strip() or None

# ============================================================
# Numbers
# ============================================================

def parse_decimal(raw: Any) -> float:
    """'1,234.50' -> 1234.5; anything unparseable -> 0.0."""
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        return 0.0 if raw != raw else float(raw)
    t = _as_text(raw).replace(',', '').strip()
    if not t:
        return 0.0
    try:
        value = float(t)
    except ValueError:
        m = re.match(r'^-?\d+(?:\.\d+)?', t)
        return float(m.group(0)) if m else 0.0
    return 0.0 if value != value else value


def parse_int(raw: Any) -> Optional[int]:
    """'3', '3.0', '1,204' -> int; blank or garbage -> None."""
    t = _as_text(raw).replace(',', '').strip()
    if not t:
        return None
    try:
        return int(float(t))
    except ValueError:
        return None

# ============================================================
# Dates & Times
# ============================================================

_DMY_HMS = re.compile(r'^(\d{2})/(\d{2})/(\d{4})\s+(\d{1,2}):(\d{2}):(\d{2})')
_DMY = re.compile(r'^(\d{2})/(\d{2})/(\d{4})')


def parse_date(raw: Any) -> Optional[datetime]:
    """Parse Remedii dates.

    Priority: 'DD/MM/YYYY HH:MM:SS' then 'DD/MM/YYYY' (both clinic-local,
    UTC+8), then ISO-8601. Naive ISO values are also taken as clinic-local.
    """
    t = _as_text(raw).strip()
    if not t:
        return None

    m = _DMY_HMS.match(t)
    if m:
        dd, mm, yyyy, hh, mi, ss = (int(g) for g in m.groups())
        try:
            return datetime(yyyy, mm, dd, hh, mi, ss, tzinfo=CLINIC_TZ)
        except ValueError:
            return None

    m = _DMY.match(t)
    if m:
        dd, mm, yyyy = (int(g) for g in m.groups())
        try:
            return datetime(yyyy, mm, dd, tzinfo=CLINIC_TZ)
        except ValueError:
            return None

    try:
        parsed = datetime.fromisoformat(t.replace('Z', '+00:00'))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=CLINIC_TZ)
    return parsed


def parse_calendar_date(raw: Any) -> Optional[date]:
    """Clinic-local calendar date of parse_date()."""
    parsed = parse_date(raw)
    if parsed is None:
        return None
    return parsed.astimezone(CLINIC_TZ).date()


_LEAD_AB_YYYY = re.compile(r'^(\d{1,2})[/\-.](\d{1,2})[/\-.](\d{4})')
_LEAD_YYYY_MM_DD = re.compile(r'^(\d{4})[/\-.](\d{1,2})[/\-.](\d{1,2})')


def parse_lead_date(raw: Any) -> Optional[date]:
    """Parse lead export dates ('1/27/2026', '27/1/2026', '2026-01-27').

    If the first group is <= 12 it is read as the month, otherwise as the day.
    Genuinely ambiguous values such as '03/04/2024' are read month-first.
    """
    t = _as_text(raw).strip().replace('"', '')
    if not t:
        return None

    m = _LEAD_AB_YYYY.match(t)
    if m:
        a, b, year = (int(g) for g in m.groups())
        month, day = (a, b) if a <= 12 else (b, a)
        try:
            return date(year, month, day)
        except ValueError:
            pass

    m = _LEAD_YYYY_MM_DD.match(t)
    if m:
        year, month, day = (int(g) for g in m.groups())
        try:
            return date(year, month, day)
        except ValueError:
            return None

    try:
        return datetime.fromisoformat(t.replace('Z', '+00:00')).date()
    except ValueError:
        return None


_AMPM = re.compile(r'^(\d{1,2}):(\d{2})(?::(\d{2}))?\s*([AaPp][Mm])')
_HMS = re.compile(r'^(\d{1,2}):(\d{2})(?::(\d{2}))?')


def parse_time(raw: Any) -> Optional[str]:
    """'9:05' -> '09:05:00', '2:30 PM' -> '14:30:00', '12:10 AM' -> '00:10:00'."""
    t = _as_text(raw).strip()
    if not t:
        return None

    m = _AMPM.match(t)
    if m:
        hours, minutes = int(m.group(1)), int(m.group(2))
        seconds = int(m.group(3) or 0)
        period = m.group(4).upper()
        if period == 'PM' and hours != 12:
            hours += 12
        if period == 'AM' and hours == 12:
            hours = 0
        if hours > 23 or minutes > 59 or seconds > 59:
            return None
        return f'{hours:02d}:{minutes:02d}:{seconds:02d}'

    m = _HMS.match(t)
    if m:
        hours, minutes = int(m.group(1)), int(m.group(2))
        seconds = int(m.group(3) or 0)
        if hours > 23 or minutes > 59 or seconds > 59:
            return None
        return f'{hours:02d}:{minutes:02d}:{seconds:02d}'

    return None

# ============================================================
# Doctors
# ============================================================

class DoctorName(NamedTuple):
    name: str
    code: Optional[str] = None


_DOCTOR_CODE = re.compile(r'^(.+?)\s*\((\d+)\)$')
_DR_PREFIX = re.compile(r'^Dr\.?\s', re.IGNORECASE)


def extract_doctor_code(raw: Any) -> DoctorName:
    """'Tan (042)' -> DoctorName('Dr. Tan', '042')."""
    t = _as_text(raw).strip()
    code = None
    m = _DOCTOR_CODE.match(t)
    if m:
        t, code = m.group(1).strip(), m.group(2)
    if not _DR_PREFIX.match(t):
        t = f'Dr. {t}'
    return DoctorName(t, code)
