"""
pytest 설정:

로컬 환경에 설치된 다른 버전의 faas_deploy 패키지가 있으면
`pytest` 실행 시 site-packages 쪽이 먼저 import 되어 테스트가 깨질 수 있다.

테스트는 항상 현재 레포의 소스를 대상으로 해야 하므로, repo root 를 sys.path 최상단에 고정한다.
"""

from __future__ import annotations

import os
import sys

import pytest


def pytest_configure() -> None:
    repo_root = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
    if repo_root not in sys.path:
        sys.path.insert(0, repo_root)


@pytest.fixture(autouse=True)
def _clean_volcengine_env(monkeypatch: pytest.MonkeyPatch) -> None:
    # 개발자 셸의 실제 자격 증명이 테스트에 섞이지 않게 한다.
    for name in (
        "VOLCENGINE_ACCESS_KEY_ID",
        "VOLCENGINE_SECRET_ACCESS_KEY",
        "VOLCENGINE_REGION",
        "FAAS_SYNC_TIMEOUT_MS",
        "FAAS_SYNC_INTERVAL_MS",
        "FAAS_RELEASE_TIMEOUT_MS",
        "FAAS_RELEASE_INTERVAL_MS",
        "FAAS_DEBUG_LOG",
    ):
        monkeypatch.delenv(name, raising=False)
