"""Supported narration/UI languages."""

SUPPORTED_LANGUAGES: dict[str, str] = {
    "en": "English",
    "de": "Deutsch",
    "fr": "Français",
    "es": "Español",
    "it": "Italiano",
    "pt": "Português",
    "nl": "Nederlands",
    "pl": "Polski",
    "ru": "Русский",
    "ja": "日本語",
    "ko": "한국어",
    "zh": "中文",
    "ar": "العربية",
    "hi": "हिन्दी",
    "tr": "Türkçe",
    "sv": "Svenska",
    "da": "Dansk",
    "no": "Norsk",
    "fi": "Suomi",
    "so": "Soomaali",
    "ps": "پښتو",
    "fa": "فارسی",
    "uk": "Українська",
    "bar": "Bayrisch",
    "el": "Ελληνικά",
    "sr": "Српски",
    "bs": "Bosanski",
    "sq": "Shqip",
    "bg": "Български",
    "hu": "Magyar",
    "hr": "Hrvatski",
    "sl": "Slovenščina",
    "cs": "Čeština",
    "sk": "Slovenčina",
    "ro": "Română",
    "ti": "ትግርኛ",
    "id": "Bahasa Indonesia",
}

SOURCE_LANGUAGES = ("en", "de")


def language_name(code: str) -> str:
    """Full name for ``code``; unknown codes are returned unchanged."""
    return SUPPORTED_LANGUAGES.get(code, code)


def is_valid_language(code: str) -> bool:
    return code in SUPPORTED_LANGUAGES
