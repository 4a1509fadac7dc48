import os

from quotaguard.config_check import main

GOOD = """
domain: foo
descriptors:
  - key: k1
    value: v1
    rate_limit:
      unit: minute
      requests_per_unit: 3
"""

OTHER_SAME_DOMAIN = """
domain: foo
descriptors:
  - key: k1
    value: v2
    rate_limit:
      unit: minute
      requests_per_unit: 100
"""


def write(directory, name, content):
    (directory / name).write_text(content, encoding="utf-8")


def test_valid_directory_passes(tmp_path, capsys):
    write(tmp_path, "a.yaml", GOOD)
    assert main(["--config_dir", str(tmp_path)]) == 0
    out = capsys.readouterr().out
    assert out.startswith("checking rate limit configs...\n")
    assert f"loading config directory: {tmp_path}\n" in out
    assert f"opening config file: {os.path.join(str(tmp_path), 'a.yaml')}\n" in out
    assert out.endswith("all rate limit configs ok\n")


def test_empty_directory_passes(tmp_path, capsys):
    assert main(["-config_dir", str(tmp_path)]) == 0
    assert capsys.readouterr().out.endswith("all rate limit configs ok\n")


def test_duplicate_domain_fails_without_merge(tmp_path, capsys):
    write(tmp_path, "a.yaml", GOOD)
    write(tmp_path, "b.yaml", OTHER_SAME_DOMAIN)
    assert main(["--config_dir", str(tmp_path)]) == 1
    out = capsys.readouterr().out
    assert "error loading rate limit configs:" in out
    assert "duplicate domain 'foo' in config file" in out
    assert "all rate limit configs ok" not in out


def test_duplicate_domain_passes_with_merge(tmp_path, capsys):
    write(tmp_path, "a.yaml", GOOD)
    write(tmp_path, "b.yaml", OTHER_SAME_DOMAIN)
    assert main(["--config_dir", str(tmp_path), "--merge_domain_configs"]) == 0
    assert capsys.readouterr().out.endswith("all rate limit configs ok\n")


def test_invalid_key_fails(tmp_path, capsys):
    write(tmp_path, "bad.yaml", "domain: foo\nbogus: 1\n")
    assert main(["--config_dir", str(tmp_path)]) == 1
    assert "config error, unknown key 'bogus'" in capsys.readouterr().out


def test_missing_directory_fails(tmp_path, capsys):
    missing = tmp_path / "missing"
    assert main(["--config_dir", str(missing)]) == 1
    assert f"error opening directory {missing}:" in capsys.readouterr().out


def test_subdirectory_cannot_be_read(tmp_path, capsys):
    (tmp_path / "nested").mkdir()
    assert main(["--config_dir", str(tmp_path)]) == 1
    nested = os.path.join(str(tmp_path), "nested")
    assert f"error reading file {nested}:" in capsys.readouterr().out