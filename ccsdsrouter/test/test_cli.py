import json

import pytest

from ccsdsrouter.cli import main, template_config
from ccsdsrouter.config import EndpointConfig, dump_config, load_config


def test_write_template(tmp_path, capsys):
    out = tmp_path / "route.yaml"
    main(["--write-template", str(out)])
    assert load_config(out) == template_config()
    assert "[OK]" in capsys.readouterr().out


def test_run_file_route(tmp_path, capsys, route_config, make_packet):
    src = tmp_path / "in.bin"
    dst = tmp_path / "out.bin"
    pkts = [make_packet(7, 8), make_packet(8, 8), make_packet(7, 9)]
    src.write_bytes(b"".join(pkts))
    cfg_path = tmp_path / "route.yaml"
    dump_config(route_config(source=EndpointConfig(kind="file", path=str(src)),
                             sink=EndpointConfig(kind="file", path=str(dst)),
                             allowed_apids=frozenset({7})), cfg_path)

    with pytest.raises(SystemExit) as ei:
        main([str(cfg_path), "--no-log-file", "--no-console", "--print-stats"])

    assert ei.value.code == 0
    assert dst.read_bytes() == pkts[0] + pkts[2]
    stats = json.loads(capsys.readouterr().out)
    assert stats["emitted"] == 2
    assert stats["dropped"]["apid_filtered"] == 1


def test_missing_config_file(tmp_path):
    with pytest.raises(SystemExit) as ei:
        main([str(tmp_path / "absent.yaml"), "--no-log-file", "--no-console"])
    assert "not found" in str(ei.value.code)


def test_invalid_config_file(tmp_path):
    p = tmp_path / "bad.yaml"
    p.write_text("source: {type: file, path: a}\nsink: {type: 'null'}\ntiming: {policy: throttle}\n",
                 encoding="utf-8")
    with pytest.raises(SystemExit) as ei:
        main([str(p), "--no-log-file", "--no-console"])
    assert "Invalid configuration" in str(ei.value.code)
