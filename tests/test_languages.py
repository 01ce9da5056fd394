from __future__ import annotations

from conftest import make_config

from contentengine.languages import resolve_languages


class _Provider:
    def __init__(self, active: bool, languages: list[str]) -> None:
        self.active = active
        self.languages = languages

    def is_active(self) -> bool:
        return self.active

    def active_languages(self) -> list[str]:
        return self.languages


def _context(contexts, settings=None):
    return contexts.create({"name": "Lyon", "type": "evergreen", "settings": settings or {}})


def test_context_languages_win(contexts):
    context = _context(contexts, {"active_langs": ["it_IT", "fr"]})
    config = make_config().languages
    assert resolve_languages(context, config, _Provider(True, ["es"])) == ["it", "fr"]


def test_active_provider_is_used_next(contexts):
    context = _context(contexts)
    config = make_config().languages
    assert resolve_languages(context, config, _Provider(True, ["es-ES", "en"])) == ["es", "en"]


def test_inactive_provider_falls_through_to_config(contexts):
    context = _context(contexts)
    config = make_config(languages={"default_languages": "en, fr"}).languages
    assert resolve_languages(context, config, _Provider(False, ["es"])) == ["en", "fr"]


def test_site_locale_then_english(contexts):
    context = _context(contexts)
    config = make_config(languages={"default_languages": [], "site_locale": "de_DE"}).languages
    assert resolve_languages(context, config) == ["de"]

    config = make_config(languages={"default_languages": [], "site_locale": ""}).languages
    assert resolve_languages(context, config) == ["en"]
