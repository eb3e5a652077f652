"""
Static reference data for the caption relay.

Holds the supported source/target languages and the built-in voice catalogs,
plus the helpers used to match voices against a listener's language.
Language lists can be overridden with JSON files (same shape as the API output).
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

logger = logging.getLogger(__name__)

# ============== Languages ==============

# Languages the speaker can talk in (code, name) - Deepgram live codes
ADMIN_LANGUAGES = [
    ("en-US", "English (US)"),
    ("en-GB", "English (UK)"),
    ("es", "Spanish"),
    ("fr", "French"),
    ("de", "German"),
    ("it", "Italian"),
    ("pt", "Portuguese"),
    ("nl", "Dutch"),
    ("hi", "Hindi"),
    ("ja", "Japanese"),
    ("ko", "Korean"),
    ("ru", "Russian"),
    ("tr", "Turkish"),
    ("zh-CN", "Chinese (Simplified)"),
]

# Languages listeners can pick for their captions (code, name)
LISTENER_LANGUAGES = [
    ("en-US", "English"),
    ("es", "Spanish"),
    ("fr", "French"),
    ("de", "German"),
    ("it", "Italian"),
    ("pt", "Portuguese"),
    ("nl", "Dutch"),
    ("pl", "Polish"),
    ("ru", "Russian"),
    ("uk", "Ukrainian"),
    ("tr", "Turkish"),
    ("ar", "Arabic"),
    ("hi", "Hindi"),
    ("bn", "Bengali"),
    ("ja", "Japanese"),
    ("ko", "Korean"),
    ("vi", "Vietnamese"),
    ("zh-CN", "Chinese (Simplified)"),
    ("zh-TW", "Chinese (Traditional)"),
]

# Most likely region per bare language, used to build voice locales
LIKELY_REGIONS = {
    "en": "US",
    "es": "ES",
    "fr": "FR",
    "de": "DE",
    "it": "IT",
    "pt": "BR",
    "nl": "NL",
    "pl": "PL",
    "ru": "RU",
    "uk": "UA",
    "tr": "TR",
    "hi": "IN",
    "ja": "JP",
    "ko": "KR",
    "vi": "VN",
    "zh": "CN",
}

# Locales that don't follow the <lang>-<REGION> rule
VOICE_LOCALE_OVERRIDES = {
    "ar": "ar-XA",
    "zh-cn": "cmn-CN",
    "bn": "bn-IN",
}


@dataclass(frozen=True)
class SupportedLanguage:
    code: str
    name: str

    def to_dict(self) -> Dict[str, str]:
        return {"code": self.code, "name": self.name}


def _from_pairs(pairs: Iterable[Tuple[str, str]]) -> List[SupportedLanguage]:
    return [SupportedLanguage(code, name) for code, name in pairs]


def load_languages_file(path: Optional[str]) -> Optional[List[SupportedLanguage]]:
    """Load a language list from a JSON file of ``[{"code": ..., "name": ...}]``.

    Returns None when no path is given or the file does not exist, so callers
    fall back to the built-in list.
    """
    if not path:
        return None
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        return None
    except json.JSONDecodeError as e:
        logger.warning("Error parsing %s: %s", path, e)
        return None

    languages = []
    for item in data:
        try:
            languages.append(SupportedLanguage(str(item["code"]), str(item["name"])))
        except (KeyError, TypeError):
            logger.warning("Skipping malformed language entry in %s: %r", path, item)
    return languages


class LanguageCatalog:
    """Admin and listener language lists, loaded once at startup."""

    def __init__(self, admin_file: Optional[str] = None, listener_file: Optional[str] = None):
        self.admin = load_languages_file(admin_file) or _from_pairs(ADMIN_LANGUAGES)
        self.listener = load_languages_file(listener_file) or _from_pairs(LISTENER_LANGUAGES)

    def languages(self, is_admin: bool) -> List[SupportedLanguage]:
        return list(self.admin if is_admin else self.listener)

    def name_for(self, code: str) -> str:
        """Display name for a language code (falls back to the code itself)."""
        for lang in self.listener + self.admin:
            if lang.code.lower() == str(code).lower():
                return lang.name
        base = primary_subtag(code)
        for lang in self.listener + self.admin:
            if primary_subtag(lang.code) == base:
                return lang.name
        return code


# ============== Language Matching ==============

def primary_subtag(code: str) -> str:
    return str(code or "").strip().split("-")[0].lower()


def same_language(a: str, b: str) -> bool:
    """True when two codes name the same language.

    Codes compare case-insensitively; a bare language matches any region of
    itself ("en" == "en-US") but two explicit regions must agree
    ("zh-CN" != "zh-TW").
    """
    left = str(a or "").strip().lower()
    right = str(b or "").strip().lower()
    if not left or not right:
        return False
    if left == right:
        return True
    if "-" in left and "-" in right:
        return False
    return primary_subtag(left) == primary_subtag(right)


def get_voice_lang_code(language: str) -> str:
    """Map a caption language to the locale the TTS catalogs use."""
    code = str(language or "").strip()
    override = VOICE_LOCALE_OVERRIDES.get(code.lower())
    if override:
        return override
    if "-" in code:
        lang, region = code.split("-", 1)
        return f"{lang.lower()}-{region.upper()}"
    region = LIKELY_REGIONS.get(code.lower(), code.upper())
    return f"{code.lower()}-{region}"


# ============== Voices ==============

@dataclass(frozen=True)
class VoiceModel:
    name: str
    display_name: str
    gender: str = "NEUTRAL"
    # Empty means multilingual (usable for any language)
    language_codes: Tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "displayName": self.display_name,
            "ssmlGender": self.gender,
            "languageCodes": list(self.language_codes),
        }


# Deepgram Aura-2 voices (id, name, gender, locales)
DEEPGRAM_VOICES = [
    ("aura-2-thalia-en", "Thalia", "FEMALE", ("en-US",)),
    ("aura-2-andromeda-en", "Andromeda", "FEMALE", ("en-US",)),
    ("aura-2-helena-en", "Helena", "FEMALE", ("en-US",)),
    ("aura-2-luna-en", "Luna", "FEMALE", ("en-US",)),
    ("aura-2-apollo-en", "Apollo", "MALE", ("en-US",)),
    ("aura-2-arcas-en", "Arcas", "MALE", ("en-US",)),
    ("aura-2-aries-en", "Aries", "MALE", ("en-US",)),
    ("aura-2-orion-en", "Orion", "MALE", ("en-US",)),
    ("aura-2-zeus-en", "Zeus", "MALE", ("en-US",)),
    ("aura-2-draco-en", "Draco", "MALE", ("en-GB",)),
    ("aura-2-pandora-en", "Pandora", "FEMALE", ("en-GB",)),
    ("aura-2-celeste-es", "Celeste", "FEMALE", ("es-CO",)),
    ("aura-2-estrella-es", "Estrella", "FEMALE", ("es-MX",)),
    ("aura-2-nestor-es", "Nestor", "MALE", ("es-ES",)),
    ("aura-2-sirio-es", "Sirio", "MALE", ("es-MX",)),
]

# OpenAI voices are multilingual (male first, female at end)
OPENAI_VOICES = [
    ("onyx", "Onyx", "MALE"),
    ("echo", "Echo", "MALE"),
    ("fable", "Fable", "MALE"),
    ("alloy", "Alloy", "NEUTRAL"),
    ("nova", "Nova", "FEMALE"),
    ("shimmer", "Shimmer", "FEMALE"),
]


def deepgram_voice_models() -> List[VoiceModel]:
    return [VoiceModel(vid, name, gender, locales) for vid, name, gender, locales in DEEPGRAM_VOICES]


def openai_voice_models() -> List[VoiceModel]:
    return [VoiceModel(vid, name, gender) for vid, name, gender in OPENAI_VOICES]


_GENDER_ORDER = {"FEMALE": 0, "MALE": 1, "NEUTRAL": 2}


def _voice_rank(voice: VoiceModel, locale: str) -> Optional[int]:
    """0 = exact locale, 1 = same base language, 2 = multilingual, None = no match."""
    if not voice.language_codes:
        return 2
    codes = [c.lower() for c in voice.language_codes]
    if locale.lower() in codes:
        return 0
    base = primary_subtag(locale)
    if any(primary_subtag(c) == base for c in codes):
        return 1
    return None


def rank_voices(voices: Iterable[VoiceModel], language: str) -> List[VoiceModel]:
    """Filter a voice catalog down to ``language`` and order best match first."""
    locale = get_voice_lang_code(language)
    ranked = []
    for voice in voices:
        rank = _voice_rank(voice, locale)
        if rank is None:
            continue
        ranked.append((rank, _GENDER_ORDER.get(voice.gender, 3), voice.display_name.lower(), voice))
    ranked.sort(key=lambda item: item[:3])
    return [item[3] for item in ranked]
