"""テスト実行時にsrcとリポジトリ直下をパスへ追加し、共通の線源データを提供する。"""

import sys
from pathlib import Path

import pytest


def pytest_configure() -> None:
    """srcディレクトリとmain.pyの置き場所をimportパスに追加する。"""
    root = Path(__file__).resolve().parents[1]
    for path in (root, root / "src"):
        if str(path) not in sys.path:
            sys.path.insert(0, str(path))


@pytest.fixture
def co60():
    from spectrum.library import get_isotope

    return get_isotope("60Co")


@pytest.fixture
def eu152():
    from spectrum.library import get_isotope

    return get_isotope("152Eu")
