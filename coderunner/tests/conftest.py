from pathlib import Path

import pytest

from coderunner.config import Settings
from coderunner.languages import get_profile
from coderunner.models import LanguageProfile

from .helpers import LocalSandbox, make_settings


@pytest.fixture
def staging_dir(tmp_path) -> Path:
    path = tmp_path / "staging"
    path.mkdir()
    return path


@pytest.fixture
def settings(staging_dir) -> Settings:
    return make_settings(staging_dir)


@pytest.fixture
def local_sandbox(settings) -> LocalSandbox:
    return LocalSandbox(settings)


@pytest.fixture
def python_profile() -> LanguageProfile:
    return get_profile("python")
