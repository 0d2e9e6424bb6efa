"""AI translation: game content at session start, and the language-file tool.

``translate_game`` localises a game's texts and status field names for one
session. ``translate_files`` (exposed as the ``gamelab-translate`` command)
translates the ``en.json``/``de.json`` UI files into every other supported
language, skipping targets whose recorded source hash is still current.
"""

from __future__ import annotations

import argparse
import asyncio
import hashlib
import json
import logging
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from gamelab.ai import AiPlatformAdapter, PlatformRegistry, default_registry
from gamelab.config import load_settings
from gamelab.errors import GameLabError, MalformedAiResponse
from gamelab.lang import SOURCE_LANGUAGES, SUPPORTED_LANGUAGES, is_valid_language, language_name
from gamelab.models import Game, TokenUsage
from gamelab.retry import TRANSLATION_RETRY, RetryPolicy

logger = logging.getLogger(__name__)

SOURCE_HASH_FIELD = "_sourceHash"

API_KEY_ENV = {"openai": "OPENAI_API_KEY", "mistral": "MISTRAL_API_KEY"}


# ── Game content ─────────────────────────────────────────

def _translated(values: dict[str, Any], key: str, fallback: str) -> str:
    value = values.get(key)
    if isinstance(value, str) and value:
        return value
    return fallback


async def translate_game(
    adapter: AiPlatformAdapter, api_key: str, game: Game, target_language: str
) -> tuple[Game, dict[str, str], TokenUsage]:
    """Translate a game's texts into ``target_language``.

    Returns the translated copy, a map of original to translated status
    field names, and the token usage. Empty translations keep the original.
    """
    if not is_valid_language(target_language):
        raise GameLabError(f"unsupported language code: {target_language}", status_code=400)

    content = {
        "name": game.name,
        "description": game.description,
        "systemMessageScenario": game.system_message_scenario,
        "systemMessageGameStart": game.system_message_game_start,
    }
    for i, status_field in enumerate(game.status_fields):
        content[f"statusField_{i}_name"] = status_field.name

    logger.debug("translating game %s to %s", game.id, target_language)
    text, usage = await adapter.translate(api_key, [json.dumps(content, ensure_ascii=False)], target_language)
    try:
        values = json.loads(text)
    except json.JSONDecodeError as e:
        raise MalformedAiResponse(f"failed to parse translated content: {e}") from e
    if not isinstance(values, dict):
        raise MalformedAiResponse("translated content is not a JSON object")

    names: dict[str, str] = {}
    fields = []
    for i, status_field in enumerate(game.status_fields):
        name = _translated(values, f"statusField_{i}_name", status_field.name)
        names[status_field.name] = name
        fields.append(status_field.model_copy(update={"name": name}))

    translated = game.model_copy(update={
        "name": _translated(values, "name", game.name),
        "description": _translated(values, "description", game.description),
        "system_message_scenario": _translated(values, "systemMessageScenario", game.system_message_scenario),
        "system_message_game_start": _translated(values, "systemMessageGameStart", game.system_message_game_start),
        "status_fields": fields,
        "language": target_language,
    })
    return translated, names, usage


# ── Language files ───────────────────────────────────────

def compute_source_hash(*contents: str) -> str:
    digest = hashlib.sha256()
    for content in contents:
        digest.update(content.encode("utf-8"))
        digest.update(b"\0")
    return digest.hexdigest()[:16]


def structure_differences(a: Any, b: Any, path: str = "") -> list[str]:
    """Key paths present in one JSON value but not the other."""
    if isinstance(a, dict) and isinstance(b, dict):
        diffs = []
        for key in sorted(set(a) | set(b)):
            if key == SOURCE_HASH_FIELD:
                continue
            sub = f"{path}.{key}" if path else key
            if key not in a or key not in b:
                diffs.append(sub)
            else:
                diffs.extend(structure_differences(a[key], b[key], sub))
        return diffs
    if isinstance(a, dict) != isinstance(b, dict):
        return [path or "<root>"]
    return []


def read_source_hash(path: Path) -> str | None:
    if not path.is_file():
        return None
    try:
        data = json.loads(path.read_text())
    except json.JSONDecodeError:
        return None
    return data.get(SOURCE_HASH_FIELD) if isinstance(data, dict) else None


@dataclass
class TranslationReport:
    translated: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    usage: TokenUsage = field(default_factory=TokenUsage)


async def translate_files(
    adapter: AiPlatformAdapter,
    api_key: str,
    input_dir: Path,
    output_dir: Path,
    languages: list[str] | None = None,
    threads: int = 0,
    retry: RetryPolicy = TRANSLATION_RETRY,
) -> TranslationReport:
    """Translate the source files in ``input_dir`` into ``output_dir/{lang}.json``."""
    sources = [
        (input_dir / f"{code}.json").read_text()
        for code in SOURCE_LANGUAGES
        if (input_dir / f"{code}.json").is_file()
    ]
    if not sources:
        raise FileNotFoundError(f"no en.json or de.json in {input_dir}")
    reference = json.loads(sources[0])
    if len(sources) == 2:
        diffs = structure_differences(reference, json.loads(sources[1]))
        if diffs:
            raise ValueError(f"source files have different structures: {', '.join(diffs)}")

    targets = languages or [c for c in SUPPORTED_LANGUAGES if c not in SOURCE_LANGUAGES]
    source_hash = compute_source_hash(*sources)
    output_dir.mkdir(parents=True, exist_ok=True)
    semaphore = asyncio.Semaphore(threads) if threads > 0 else None
    report = TranslationReport()

    async def one(code: str) -> None:
        target = output_dir / f"{code}.json"
        if read_source_hash(target) == source_hash:
            report.skipped.append(code)
            return

        async def call() -> tuple[str, TokenUsage]:
            return await adapter.translate(api_key, sources, code)

        try:
            if semaphore is not None:
                async with semaphore:
                    text, usage = await retry.run(call, label=f"translate {code}")
            else:
                text, usage = await retry.run(call, label=f"translate {code}")
        except GameLabError as e:
            logger.error("%s (%s): all attempts failed: %s", language_name(code), code, e)
            report.failed[code] = str(e)
            return

        report.usage = report.usage.add(usage)
        data = json.loads(text)
        diffs = structure_differences(reference, data)
        if diffs:
            logger.warning("%s: translation structure differs at %s", code, ", ".join(diffs))
        data[SOURCE_HASH_FIELD] = source_hash
        target.write_text(json.dumps(data, ensure_ascii=False, indent=2) + "\n")
        report.translated.append(code)
        logger.info("%s (%s) written to %s", language_name(code), code, target)

    await asyncio.gather(*(one(code) for code in targets))
    report.translated.sort()
    report.skipped.sort()
    return report


# ── CLI ──────────────────────────────────────────────────

def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="gamelab-translate",
        description="Translate language files from English and German to other languages using AI.",
    )
    parser.add_argument("--input", required=True, type=Path,
                        help="Directory containing en.json and/or de.json")
    parser.add_argument("--output", required=True, type=Path,
                        help="Directory for the generated {lang}.json files")
    parser.add_argument("--lang", action="append", default=None,
                        help="Target language code; repeatable (default: all supported)")
    parser.add_argument("--platform", default="openai",
                        help="AI platform to use (openai, mistral, mock)")
    parser.add_argument("--api-key", default=None,
                        help="API key (default: OPENAI_API_KEY or MISTRAL_API_KEY)")
    parser.add_argument("--threads", type=int, default=0,
                        help="Parallel translations (0 = unlimited)")
    return parser.parse_args(argv)


async def _run(args: argparse.Namespace, registry: PlatformRegistry) -> int:
    try:
        adapter = registry.get(args.platform)
        api_key = args.api_key or os.environ.get(API_KEY_ENV.get(args.platform, ""), "")
        if not api_key and args.platform != "mock":
            print(f"Error: no API key for {args.platform}; pass --api-key", file=sys.stderr)
            return 1
        for code in args.lang or []:
            if not is_valid_language(code):
                print(f"Error: unsupported language code: {code}", file=sys.stderr)
                return 1
        report = await translate_files(
            adapter, api_key, args.input, args.output, args.lang, args.threads,
        )
    except (GameLabError, FileNotFoundError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        await registry.aclose()

    print(
        f"Done: {len(report.translated)} translated, {len(report.skipped)} up to date, "
        f"{len(report.failed)} failed. Tokens: input={report.usage.input_tokens} "
        f"output={report.usage.output_tokens} total={report.usage.total_tokens}"
    )
    return 1 if report.failed else 0


def main(argv: list[str] | None = None) -> int:
    settings = load_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(levelname)s %(name)s: %(message)s",
    )
    args = _parse_args(argv)
    return asyncio.run(_run(args, default_registry(settings)))


if __name__ == "__main__":
    sys.exit(main())
