from __future__ import annotations

from typing import Protocol

from .config import LanguagesConfig, normalize_language_code, normalize_language_list
from .models import Context

FALLBACK_LANGUAGE = "en"


class MultilingualProvider(Protocol):
    def is_active(self) -> bool:
        ...

    def active_languages(self) -> list[str]:
        ...


def resolve_languages(
    context: Context,
    config: LanguagesConfig,
    provider: MultilingualProvider | None = None,
) -> list[str]:
    """Pick the languages to plan for, first non-empty source wins.

    1. the context's own ``settings.active_langs``
    2. an active multilingual provider (never its default locale)
    3. the configured default language list
    4. the site locale
    5. ``en``
    """
    explicit = normalize_language_list(context.settings.get("active_langs") or [])
    if explicit:
        return explicit

    if provider is not None and provider.is_active():
        reported = normalize_language_list(provider.active_languages())
        if reported:
            return reported

    if config.default_languages:
        return list(config.default_languages)

    locale = normalize_language_code(config.site_locale)
    if locale:
        return [locale]

    return [FALLBACK_LANGUAGE]
