from __future__ import annotations

import json
from pathlib import Path

import ctdynamo_py


def test_version_matches_version_json() -> None:
    version_file = Path(__file__).resolve().parents[2] / "src" / "ctdynamo_py" / "version.json"
    data = json.loads(version_file.read_text(encoding="utf-8"))
    assert ctdynamo_py.__repo_version__ == data["version"]
    if "-rc." in data["version"]:
        assert "-rc." not in ctdynamo_py.__version__
        assert "rc" in ctdynamo_py.__version__
    else:
        assert ctdynamo_py.__version__ == data["version"]


def test_release_candidates_normalize_to_pep440() -> None:
    assert ctdynamo_py._normalize_repo_version("1.2.3") == "1.2.3"
    assert ctdynamo_py._normalize_repo_version("1.2.3-rc.4") == "1.2.3rc4"
    assert ctdynamo_py._normalize_repo_version("1.2.3-rc4") == "1.2.3rc4"
