"""
tools/validate_design_config.py CLI 테스트
"""

import json
import shutil

from services.study_design.config_loader import CONFIG_DIR, clear_cache
from tools.validate_design_config import main


class TestValidateDesignConfigCLI:
    """validate_design_config.main"""

    def test_bundled_config_passes(self, capsys):
        assert main([]) == 0
        out = capsys.readouterr().out
        assert "결과: OK" in out
        assert "config hash:" in out

    def test_json_output(self, capsys):
        assert main(["--config-dir", str(CONFIG_DIR), "--json"]) == 0
        data = json.loads(capsys.readouterr().out)
        assert data["valid"] is True
        assert len(data["config_hash"]) == 16

    def test_broken_config_fails(self, tmp_path, capsys):
        for path in CONFIG_DIR.glob("*.yaml"):
            shutil.copy(path, tmp_path / path.name)
        fallback = tmp_path / "fallback_order.yaml"
        fallback.write_text(
            fallback.read_text(encoding="utf-8").replace("[SAD, MAD]", "[SAD, GHOST]"),
            encoding="utf-8",
        )
        clear_cache()

        assert main(["--config-dir", str(tmp_path), "--json"]) == 1
        data = json.loads(capsys.readouterr().out)
        errors = [e for e in data["errors"] if e["type"] == "error"]
        assert [e["location"] for e in errors] == ["fallback_order[innovator:pk_safety][1]"]

    def test_malformed_yaml_fails_without_traceback(self, tmp_path, capsys):
        for path in CONFIG_DIR.glob("*.yaml"):
            shutil.copy(path, tmp_path / path.name)
        (tmp_path / "guardrails.yaml").write_text("rules: [unclosed\n", encoding="utf-8")
        clear_cache()

        assert main(["--config-dir", str(tmp_path), "--json"]) == 1
        data = json.loads(capsys.readouterr().out)
        assert data["valid"] is False
        assert "guardrails.yaml" in [e["location"] for e in data["errors"]]

    def test_missing_file_in_summary(self, tmp_path, capsys):
        for path in CONFIG_DIR.glob("*.yaml"):
            if path.name != "protocol.yaml":
                shutil.copy(path, tmp_path / path.name)
        clear_cache()

        assert main(["--config-dir", str(tmp_path)]) == 1
        out = capsys.readouterr().out
        assert "[error] protocol.yaml: Config file not found" in out
        assert "결과: FAIL" in out

    def test_missing_directory(self, tmp_path, capsys):
        assert main(["--config-dir", str(tmp_path / "nope")]) == 1
        assert "[ERROR]" in capsys.readouterr().out
