"""Input normalization: recovers numeric, time and date values from noisy spoken input.

Every normalizer is a pure function returning the validated value or ``None``.
``None`` always means "missing"; it is never coerced to zero or a default.
Nothing in this module raises on bad input.
"""

from __future__ import annotations

import math
import re
import unicodedata
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any
from zoneinfo import ZoneInfo

from app.schemas.batch import DateValue, MeasurementValue, NumberValue, TimeValue

PH_MIN = 3.5
PH_MAX = 8.0
TEMPERATURE_MIN = 0.0
TEMPERATURE_MAX = 50.0
VOLUME_MAX = 10_000.0

_UNIT_TOKENS = re.compile(
	r"\b(ph|graus?|celsius|c|litros?|l|ml|pecas?|unidades?)\b|[°º]",
	re.IGNORECASE,
)
_SPACED_DIGITS = re.compile(r"^(\d)\s*[\s\-]\s*(\d)$")
_NUMBER = re.compile(r"^-?\d+(?:\.\d+)?$")
_HH_MM = re.compile(r"^(\d{1,2})[:h\s](\d{2})$")
_BARE_HOUR = re.compile(r"^(\d{1,2})h?$")
_ISO_DATE = re.compile(r"^(\d{4})-(\d{1,2})-(\d{1,2})$")
_BR_DATE = re.compile(r"^(\d{1,2})[/.](\d{1,2})(?:[/.](\d{2}|\d{4}))?$")

TIME_WORDS: dict[str, int] = {
	"zero": 0,
	"uma": 1,
	"um": 1,
	"duas": 2,
	"dois": 2,
	"tres": 3,
	"quatro": 4,
	"cinco": 5,
	"seis": 6,
	"sete": 7,
	"oito": 8,
	"nove": 9,
	"dez": 10,
	"onze": 11,
	"doze": 12,
	"treze": 13,
	"catorze": 14,
	"quatorze": 14,
	"quinze": 15,
	"dezesseis": 16,
	"dezessete": 17,
	"dezoito": 18,
	"dezenove": 19,
	"vinte": 20,
	"trinta": 30,
	"quarenta": 40,
	"cinquenta": 50,
	"meia": 30,
}
_COUNT_WORDS = {word: value for word, value in TIME_WORDS.items() if value <= 20 and word != "meia"}
_NOW_TOKENS = {"agora", "now"}
_TODAY_TOKENS = {"hoje", "today"}
_YESTERDAY_TOKENS = {"ontem", "yesterday"}


def fold_text(text: str) -> str:
	decomposed = unicodedata.normalize("NFD", text.lower().strip())
	return "".join(char for char in decomposed if unicodedata.category(char) != "Mn")


def _round(value: float, places: int) -> float:
	quantum = Decimal(1).scaleb(-places)
	return float(Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP))


def _clean_number(raw: Any) -> float | None:
	if raw is None or isinstance(raw, bool):
		return None
	if isinstance(raw, (int, float)):
		return float(raw) if math.isfinite(raw) else None

	text = _UNIT_TOKENS.sub(" ", fold_text(str(raw)))
	text = text.replace(",", ".").strip()
	if not text:
		return None

	spaced = _SPACED_DIGITS.match(text)
	if spaced:
		text = f"{spaced.group(1)}.{spaced.group(2)}"
	text = re.sub(r"\s+", "", text)
	if not _NUMBER.match(text):
		return None
	try:
		value = float(Decimal(text))
	except InvalidOperation:
		return None
	return value if math.isfinite(value) else None


# ── Numeric normalizers ─────────────────────────────────────────────────────


def normalize_ph(raw: Any) -> float | None:
	"""``66 -> 6.6``, ``"5 5" -> 5.5``, ``"6,5" -> 6.5``; outside [3.5, 8.0] is rejected."""
	value = _clean_number(raw)
	if value is None:
		return None
	if 100 <= value < 1000:
		value = value / 100
	elif 14 < value < 100:
		value = value / 10
	if not PH_MIN <= value <= PH_MAX:
		return None
	return _round(value, 2)


def normalize_temperature(raw: Any) -> float | None:
	value = _clean_number(raw)
	if value is None:
		return None
	if 50 < value < 100:
		value = value / 10
	if not TEMPERATURE_MIN <= value <= TEMPERATURE_MAX:
		return None
	return _round(value, 1)


def normalize_volume(raw: Any) -> float | None:
	value = _clean_number(raw)
	if value is None or value <= 0 or value > VOLUME_MAX:
		return None
	return _round(value, 2)


def normalize_count(raw: Any) -> int | None:
	if isinstance(raw, str) and fold_text(raw) in _COUNT_WORDS:
		value: float | None = float(_COUNT_WORDS[fold_text(raw)])
	else:
		value = _clean_number(raw)
	if value is None or value < 1 or value != int(value):
		return None
	return int(value)


# ── Spoken time / date ──────────────────────────────────────────────────────


def _format_time(hours: int, minutes: int) -> str | None:
	if 0 <= hours <= 23 and 0 <= minutes <= 59:
		return f"{hours:02d}:{minutes:02d}"
	return None


def parse_spoken_time(raw: Any, now: datetime | None = None, timezone: str = "America/Sao_Paulo") -> str | None:
	"""Parse ``"15:30"``, ``"15 30"``, ``"15"``, ``"quinze e meia"``, ``"agora"`` into ``HH:MM``."""
	if raw is None or isinstance(raw, bool):
		return None
	text = fold_text(str(raw))
	if not text:
		return None

	if text in _NOW_TOKENS:
		current = now or datetime.now(ZoneInfo(timezone))
		if current.tzinfo is not None:
			current = current.astimezone(ZoneInfo(timezone))
		return _format_time(current.hour, current.minute)

	text = re.sub(r"\bhoras?\b|\bminutos?\b", " ", text)
	text = re.sub(r"\s+e\s+", " ", f" {text} ")
	text = re.sub(r"\s+", " ", text).strip()

	numeric = _HH_MM.match(text)
	if numeric:
		return _format_time(int(numeric.group(1)), int(numeric.group(2)))

	bare = _BARE_HOUR.match(text)
	if bare:
		return _format_time(int(bare.group(1)), 0)

	words = text.split()
	values = [int(word) if word.isdigit() else TIME_WORDS.get(word) for word in words]
	if not words or any(value is None for value in values):
		return None

	hours = values[0]
	index = 1
	if index < len(values) and hours >= 20 and values[index] < 10:
		hours += values[index]
		index += 1

	minutes = 0
	if index < len(values):
		minutes = values[index]
		index += 1
		if index < len(values) and minutes >= 20 and values[index] < 10:
			minutes += values[index]
			index += 1
	if index != len(values):
		return None
	return _format_time(hours, minutes)


def parse_spoken_date(raw: Any, today: date | None = None) -> date | None:
	"""Parse ISO, ``DD/MM/YYYY``, ``DD/MM`` (current year) and the tokens ``hoje``/``ontem``."""
	if raw is None or isinstance(raw, bool):
		return None
	if isinstance(raw, datetime):
		return raw.date()
	if isinstance(raw, date):
		return raw

	text = fold_text(str(raw))
	reference = today or date.today()
	if text in _TODAY_TOKENS:
		return reference
	if text in _YESTERDAY_TOKENS:
		return reference - timedelta(days=1)

	try:
		iso = _ISO_DATE.match(text)
		if iso:
			return date(int(iso.group(1)), int(iso.group(2)), int(iso.group(3)))
		local = _BR_DATE.match(text)
		if local:
			year_raw = local.group(3)
			if year_raw is None:
				year = reference.year
			elif len(year_raw) == 2:
				year = 2000 + int(year_raw)
			else:
				year = int(year_raw)
			return date(year, int(local.group(2)), int(local.group(1)))
	except ValueError:
		return None
	return None


# ── Canonical key → typed value ─────────────────────────────────────────────


def normalizer_kind(key: str) -> str:
	if key.endswith("_time"):
		return "time"
	if key.endswith("_date"):
		return "date"
	if key == "ph" or key.endswith("_ph") or key.startswith("ph_"):
		return "ph"
	if "temperature" in key:
		return "temperature"
	if "volume" in key:
		return "volume"
	if key.endswith("_quantity") or key.endswith("_count"):
		return "count"
	return "number"


def build_measurement(
	key: str,
	raw: Any,
	*,
	now: datetime | None = None,
	timezone: str = "America/Sao_Paulo",
) -> MeasurementValue | None:
	"""Normalize ``raw`` with the normalizer that fits the canonical ``key``."""
	kind = normalizer_kind(key)
	if kind == "time":
		parsed_time = parse_spoken_time(raw, now=now, timezone=timezone)
		return TimeValue(value=parsed_time) if parsed_time else None
	if kind == "date":
		today = None
		if now is not None:
			today = (now.astimezone(ZoneInfo(timezone)) if now.tzinfo else now).date()
		parsed_date = parse_spoken_date(raw, today=today)
		return DateValue(value=parsed_date) if parsed_date else None

	normalizers = {
		"ph": normalize_ph,
		"temperature": normalize_temperature,
		"volume": normalize_volume,
		"count": normalize_count,
		"number": _clean_number,
	}
	value = normalizers[kind](raw)
	if value is None:
		return None
	return NumberValue(value=float(value))
