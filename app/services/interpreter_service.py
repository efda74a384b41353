"""Voice command interpretation: intent classification and entity extraction."""

from __future__ import annotations

import json
import re
from typing import Any

import httpx
import structlog
from pydantic import ValidationError

from app.config import Settings, get_settings
from app.schemas.commands import CommandEntities, CommandIntent, InterpretedCommand
from app.services.normalization import TIME_WORDS, fold_text, normalize_count

logger = structlog.get_logger("cheese.interpreter")

KEYWORD_CONFIDENCE = 0.7

SYSTEM_PROMPT = (
	"Você é um interpretador de comandos de voz para uma queijaria artesanal. "
	"Analise o texto do usuário e retorne APENAS um JSON válido com: "
	"intent (uma de: status, start_batch, advance, log_ph, log_time, log_date, log_temperature, "
	"log_pieces, pause, resume, instructions, help, goodbye, timer, query_input, unknown), "
	"confidence (0.0 a 1.0) e entities (volume, temperature, ph_value, time_value, time_type, "
	"pieces_quantity, date_value, date_type, input_id, reason). "
	"time_type é flocculation, cut ou press; date_type é chamber_2_entry; "
	"input_id é FERMENT_LR, FERMENT_DX, FERMENT_KL ou RENNET. "
	"Retorne APENAS o JSON, sem markdown ou explicações."
)

EXAMPLES = [
	("qual o status", {"intent": "status", "confidence": 0.95, "entities": {}}),
	(
		"iniciar lote com 130 litros temperatura 32 graus ph 6,5",
		{"intent": "start_batch", "confidence": 0.95, "entities": {"volume": 130, "temperature": 32, "ph_value": 6.5}},
	),
	("avançar para próxima etapa", {"intent": "advance", "confidence": 0.9, "entities": {}}),
	("pH cinco ponto dois", {"intent": "log_ph", "confidence": 0.9, "entities": {"ph_value": 5.2}}),
	(
		"hora da floculação dez e trinta",
		{"intent": "log_time", "confidence": 0.85, "entities": {"time_value": "10:30", "time_type": "flocculation"}},
	),
	("quanto falta no timer", {"intent": "timer", "confidence": 0.95, "entities": {}}),
	(
		"tem doze peças",
		{"intent": "log_pieces", "confidence": 0.9, "entities": {"pieces_quantity": 12}},
	),
	("quanto de coalho", {"intent": "query_input", "confidence": 0.9, "entities": {"input_id": "RENNET"}}),
]

# ── Keyword tables ──────────────────────────────────────────────────────────

_INTENT_KEYWORDS: list[tuple[CommandIntent, tuple[str, ...]]] = [
	(CommandIntent.goodbye, ("tchau", "ate logo", "encerrar", "sair")),
	(CommandIntent.help, ("ajuda", "socorro", "o que posso")),
	(CommandIntent.start_batch, ("iniciar", "novo lote", "comecar lote", "comecar um lote")),
	(CommandIntent.resume, ("retomar", "despausar", "continuar lote")),
	(CommandIntent.pause, ("pausar", "pausa")),
	(CommandIntent.timer, ("quanto falta", "falta quanto", "quanto tempo", "timer", "cronometro")),
	(CommandIntent.log_pieces, ("pecas", "peca")),
	(CommandIntent.query_input, ("quanto de", "quanto e o", "qual a dose", "dose de", "quantidade de")),
	(CommandIntent.log_time, ("floculacao", "ponto de corte", "hora do corte", "horario do corte", "prensa")),
	(CommandIntent.log_date, ("camara",)),
	(CommandIntent.log_ph, ("ph",)),
	(CommandIntent.log_temperature, ("temperatura",)),
	(CommandIntent.advance, ("avancar", "proxima etapa", "proxima", "seguir", "terminei")),
	(CommandIntent.instructions, ("instrucao", "instrucoes", "o que fazer", "como faco", "repetir")),
	(CommandIntent.status, ("status", "situacao", "em que etapa", "onde estamos")),
]

_TIME_TYPES = {
	"floculacao": "flocculation",
	"corte": "cut",
	"prensa": "press",
}

_INPUT_TOKENS = {
	"lr": "FERMENT_LR",
	"dx": "FERMENT_DX",
	"kl": "FERMENT_KL",
	"coalho": "RENNET",
}

_NUMBER = r"(\d+(?:[.,]\d+)?)"
_VOLUME = re.compile(_NUMBER + r"\s*(?:l|litros?)\b")
_TEMPERATURE = re.compile(r"(?:temperatura\s*(?:de\s*|e\s*)?" + _NUMBER + r"|" + _NUMBER + r"\s*(?:graus|°|c\b))")
_PH = re.compile(r"\bph\s*(?:do leite\s*)?(?:de\s*|e\s*|=\s*)?" + _NUMBER)
_PIECES_BEFORE = re.compile(r"\b(\d+|[a-z]+)\s+pecas?\b")
_PIECES_AFTER = re.compile(r"\bpecas?\s+(?:e\s+|sao\s+|=\s+)?(\d+|[a-z]+)\b")
_SPOKEN_DECIMAL = re.compile(r"\b([a-z]+)\s+(?:ponto|virgula)\s+([a-z]+)\b")
_TIME_PHRASE = re.compile(r"(?:floculacao|corte|prensa)\s+(?:(?:foi|e)\s+)?(?:(?:as|a|de|em)\s+)?(.+)$")
_DATE_TOKEN = re.compile(r"\b(hoje|ontem|\d{4}-\d{1,2}-\d{1,2}|\d{1,2}/\d{1,2}(?:/\d{2,4})?)\b")
_WORD = re.compile(r"[a-z]+")


def _number(raw: str | None) -> float | None:
	if raw is None:
		return None
	return float(raw.replace(",", "."))


def _spoken_decimal(text: str) -> float | None:
	"""``"cinco ponto dois"`` -> 5.2 when both sides are single digits."""
	match = _SPOKEN_DECIMAL.search(text)
	if not match:
		return None
	whole = TIME_WORDS.get(match.group(1))
	fraction = TIME_WORDS.get(match.group(2))
	if whole is None or fraction is None or whole > 14 or fraction > 9:
		return None
	return float(f"{whole}.{fraction}")


def _pieces(text: str) -> int | None:
	for pattern in (_PIECES_BEFORE, _PIECES_AFTER):
		for match in pattern.finditer(text):
			count = normalize_count(match.group(1))
			if count is not None:
				return count
	return None


def extract_entities(text: str) -> CommandEntities:
	"""Regex entity extraction over folded text; values stay raw for the normalizers."""
	entities = CommandEntities()

	volume = _VOLUME.search(text)
	if volume:
		entities.volume = _number(volume.group(1))

	temperature = _TEMPERATURE.search(text)
	if temperature:
		entities.temperature = _number(temperature.group(1) or temperature.group(2))

	ph = _PH.search(text)
	if ph:
		entities.ph_value = _number(ph.group(1))
	elif "ph" in _WORD.findall(text):
		entities.ph_value = _spoken_decimal(text)

	entities.pieces_quantity = _pieces(text)

	for token, time_type in _TIME_TYPES.items():
		if token in text:
			entities.time_type = time_type
			phrase = _TIME_PHRASE.search(text)
			if phrase:
				entities.time_value = phrase.group(1).strip() or None
			break

	if "camara" in text:
		entities.date_type = "chamber_2_entry"
		date_token = _DATE_TOKEN.search(text)
		if date_token:
			entities.date_value = date_token.group(1)

	words = set(_WORD.findall(text))
	for token, input_id in _INPUT_TOKENS.items():
		if token in words:
			entities.input_id = input_id
			break
	return entities


def classify_keywords(text: str) -> InterpretedCommand:
	normalized = re.sub(r"[?!;]", " ", fold_text(text)).strip()
	if not normalized:
		return InterpretedCommand.unknown()
	padded = f" {normalized} "
	for intent, tokens in _INTENT_KEYWORDS:
		if any(f" {token} " in padded or (len(token) > 4 and token in normalized) for token in tokens):
			return InterpretedCommand(
				intent=intent,
				confidence=KEYWORD_CONFIDENCE,
				entities=extract_entities(normalized),
			)
	return InterpretedCommand.unknown()


class InterpreterService:
	def __init__(self, settings: Settings | None = None, transport: httpx.AsyncBaseTransport | None = None):
		self.settings = settings or get_settings()
		self.transport = transport

	async def interpret(self, text: str) -> InterpretedCommand:
		if not text or not text.strip():
			return InterpretedCommand.unknown()
		if not self.settings.anthropic_api_key:
			return classify_keywords(text)
		try:
			payload = await self.call_llm(text)
		except httpx.HTTPError as exc:
			logger.warning("interpreter_llm_unavailable", error=str(exc))
			return classify_keywords(text)
		return self.parse_response(payload)

	async def call_llm(self, text: str) -> Any:
		headers = {
			"x-api-key": self.settings.anthropic_api_key,
			"anthropic-version": "2023-06-01",
			"content-type": "application/json",
		}
		messages: list[dict[str, str]] = []
		for sample, answer in EXAMPLES:
			messages.append({"role": "user", "content": sample})
			messages.append({"role": "assistant", "content": json.dumps(answer, ensure_ascii=False)})
		messages.append({"role": "user", "content": text.strip().lower()})
		body = {
			"model": self.settings.anthropic_model,
			"max_tokens": 200,
			"temperature": 0.1,
			"system": SYSTEM_PROMPT,
			"messages": messages,
		}

		async with httpx.AsyncClient(timeout=self.settings.anthropic_timeout_seconds, transport=self.transport) as client:
			response = await client.post(self.settings.anthropic_base_url, headers=headers, json=body)
			response.raise_for_status()
		try:
			return response.json()
		except ValueError:
			return {}

	@staticmethod
	def parse_response(payload: Any) -> InterpretedCommand:
		content = payload.get("content") if isinstance(payload, dict) else None
		if not isinstance(content, list) or not content or not isinstance(content[0], dict):
			return InterpretedCommand.unknown()
		text = str(content[0].get("text") or "").strip()
		try:
			parsed = json.loads(text)
		except json.JSONDecodeError:
			logger.warning("interpreter_unparsable", text=text[:200])
			return InterpretedCommand.unknown()
		if not isinstance(parsed, dict):
			return InterpretedCommand.unknown()

		parsed.setdefault("confidence", 0.5)
		if parsed.get("entities") is None:
			parsed["entities"] = {}
		try:
			command = InterpretedCommand.model_validate(parsed)
		except ValidationError as exc:
			logger.warning("interpreter_invalid_output", errors=exc.error_count())
			return InterpretedCommand.unknown()
		if command.intent == CommandIntent.unknown:
			return InterpretedCommand.unknown()
		return command
