from typing import Dict, Optional

from .models import LanguageProfile

LANGUAGE_PROFILES: Dict[str, LanguageProfile] = {
    "python": LanguageProfile("python", ("python3", "-u"), ".py", "python:3.12-slim"),
    "javascript": LanguageProfile("javascript", ("node",), ".js", "node:20-slim"),
    "ruby": LanguageProfile("ruby", ("ruby",), ".rb", "ruby:3.3-slim"),
    "perl": LanguageProfile("perl", ("perl",), ".pl", "perl:5-slim"),
    "php": LanguageProfile("php", ("php",), ".php", "php:8.3-cli"),
    "bash": LanguageProfile("bash", ("bash",), ".sh", "bash:5"),
}

ALIASES = {
    "node": "javascript",
    "js": "javascript",
    "py": "python",
}


def get_profile(language: str) -> Optional[LanguageProfile]:
    """Look up a language profile; None if the language is not supported."""
    key = language.strip().lower()
    return LANGUAGE_PROFILES.get(ALIASES.get(key, key))
