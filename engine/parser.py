"""
Text extraction over `foundry` CLI output.

All functions are pure and total: unrecognised or truncated output yields an
empty result, never an exception. Column layouts and emoji markers differ
between CLI releases, so each rule keys on phrases and header positions rather
than fixed offsets.
"""
from __future__ import annotations

import re

from engine.base import DownloadProgress, LoadedModel

_ANSI_RE = re.compile(r"\x1b\[[0-?]*[ -/]*[@-~]|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)|\x1b[@-Z\\-_]")

_SERVICE_URL_RE = re.compile(
    r"(?:service is started on|service is running on|already running on)\s+(https?://[^/\s,]+)",
    re.IGNORECASE,
)
STATUS_SUFFIX = "/openai/status"

ALIAS_COLUMN = "Alias"
SIBLING_COLUMNS = ("Device", "Task", "File Size", "License", "Model ID")
HINT_PREFIXES = ("To ", "Use ")
DIVIDER_CHARS = set("-─—=_+|· ")

CACHE_MARKER = "\U0001F4BE"
_CACHE_RE = re.compile(re.escape(CACHE_MARKER) + r"\s*([^\s]+)")

LOADED_SECTION = "Models running in service:"
NO_MODELS_LOADED = "no models are currently loaded"

_IDENT_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_HOST_RE = re.compile(r"^\d{1,3}(?:\.\d{1,3}){3}(?::\d+)?$")
_PERCENT_RE = re.compile(r"(\d+(?:\.\d+)?)\s*%")

LOAD_SUCCESS_MARKER = "loaded successfully"


def strip_ansi(text: str | None) -> str:
    if not text:
        return ""
    return _ANSI_RE.sub("", text)


def _lines(text: str | None) -> list[str]:
    return strip_ansi(text).expandtabs(8).splitlines()


def _is_hint(line: str) -> bool:
    return line.lstrip().startswith(HINT_PREFIXES)


def _is_divider(line: str) -> bool:
    stripped = line.strip()
    return bool(stripped) and set(stripped) <= DIVIDER_CHARS


def _dedupe(items) -> list[str]:
    seen: set[str] = set()
    result: list[str] = []
    for item in items:
        key = item.lower()
        if key in seen:
            continue
        seen.add(key)
        result.append(item)
    return result


def extract_service_url(text: str | None) -> str | None:
    """Base URL from `service status` / `service start` output, or None."""
    match = _SERVICE_URL_RE.search(strip_ansi(text))
    if not match:
        return None
    url = match.group(1).rstrip("/.!")
    if url.endswith(STATUS_SUFFIX):
        url = url[: -len(STATUS_SUFFIX)]
    return url or None


def _alias_span(header: str) -> tuple[int, int | None] | None:
    start = header.find(ALIAS_COLUMN)
    if start < 0:
        return None
    following = [header.find(name, start + len(ALIAS_COLUMN)) for name in SIBLING_COLUMNS]
    following = [pos for pos in following if pos > start]
    if not following:
        return None
    return start, min(following)


def parse_available_aliases(text: str | None) -> list[str]:
    """
    Aliases from the `model list` table.

    The Alias column span is measured on the header row and sliced out of each
    data row, so continuation rows (blank alias, device/task filled in) add
    nothing. Stops at the first hint line ("To ...", "Use ...").
    """
    aliases: list[str] = []
    span: tuple[int, int | None] | None = None
    for line in _lines(text):
        candidate = _alias_span(line)
        if candidate is not None:
            span = candidate
            continue
        if span is None:
            continue
        if _is_hint(line):
            break
        if not line.strip() or _is_divider(line):
            continue
        start, end = span
        cell = " ".join(line[start:end].split())
        if not cell:
            continue
        token = cell.split()[0]
        if any(ch.isalnum() for ch in token):
            aliases.append(token)
    return _dedupe(aliases)


def parse_cached_aliases(text: str | None) -> list[str]:
    """Aliases marked with the cache glyph in `cache list` output."""
    return _dedupe(match.group(1) for match in _CACHE_RE.finditer(strip_ansi(text)))


def _is_url_like(token: str) -> bool:
    lowered = token.lower()
    return "://" in lowered or lowered.startswith("www.") or bool(_HOST_RE.match(token))


def parse_loaded_models(text: str | None) -> list[LoadedModel]:
    """Rows of the "Models running in service:" section of `service list`."""
    cleaned = strip_ansi(text)
    if NO_MODELS_LOADED in cleaned.lower():
        return []

    models: list[LoadedModel] = []
    seen: set[str] = set()
    in_section = False
    for line in cleaned.expandtabs(8).splitlines():
        if LOADED_SECTION in line:
            in_section = True
            continue
        if not in_section:
            continue
        if _is_hint(line):
            break
        tokens = [tok for tok in line.split() if _IDENT_RE.match(tok) and not _is_url_like(tok)]
        if not tokens or tokens[0].lower() == ALIAS_COLUMN.lower():
            continue
        alias = tokens[0]
        model_id = tokens[-1] if len(tokens) > 1 and tokens[-1].lower() != alias.lower() else None
        if alias.lower() in seen:
            continue
        seen.add(alias.lower())
        models.append(LoadedModel(alias=alias, model_id=model_id))
    return models


def parse_loaded_aliases(text: str | None) -> list[str]:
    return [model.alias for model in parse_loaded_models(text)]


def load_succeeded(text: str | None) -> bool:
    return LOAD_SUCCESS_MARKER in strip_ansi(text).lower()


def extract_percent(line: str | None) -> int | None:
    match = _PERCENT_RE.search(strip_ansi(line))
    if not match:
        return None
    try:
        return int(round(float(match.group(1))))
    except ValueError:
        return None


def progress_from_line(line: str | None, default_label: str = "Working...") -> DownloadProgress:
    """Map one line of download/load output to a progress label and percent."""
    cleaned = strip_ansi(line).strip()
    lowered = cleaned.lower()
    percent = extract_percent(cleaned)
    if "error" in lowered or "failed" in lowered:
        label = "Error occurred"
    elif "download" in lowered:
        label = "Downloading model..."
    elif "loading" in lowered:
        label = "Loading model..."
    elif "starting" in lowered:
        label = "Starting model..."
    elif "ready" in lowered or "started" in lowered or "complete" in lowered:
        label = "Model ready"
        percent = 100 if percent is None else percent
    else:
        label = default_label
    if percent is not None:
        percent = max(0, min(100, percent))
    return DownloadProgress(label=label, percent=percent)
