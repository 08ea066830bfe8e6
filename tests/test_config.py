import sys
from datetime import time

import pytest

sys.path.insert(0, '.')

from config.config_loader import Config
from config.utils import get_config_section, parse_clock


def test_env_placeholders_resolve_and_unset_become_none(tmp_path, monkeypatch):
    path = tmp_path / 'config.yaml'
    path.write_text(
        "provider:\n"
        "  api_key: ${TEST_GROWW_KEY}\n"
        "  api_secret: ${TEST_GROWW_SECRET_UNSET}\n"
        "scheduler:\n"
        "  window_start: \"15:25\"\n"
    )
    monkeypatch.setenv('TEST_GROWW_KEY', 'from-env')
    monkeypatch.delenv('TEST_GROWW_SECRET_UNSET', raising=False)

    cfg = Config(str(path))
    provider = cfg.section('provider')
    assert provider.get('api_key') == 'from-env'
    assert provider.get('api_secret', 'fallback') == 'fallback'
    assert get_config_section(cfg, 'scheduler') == {'window_start': '15:25'}
    assert get_config_section(cfg, 'missing') == {}


def test_missing_config_file_is_an_error(tmp_path):
    with pytest.raises(RuntimeError):
        Config(str(tmp_path / 'absent.yaml'))


def test_parse_clock():
    assert parse_clock('15:25') == time(15, 25)
    assert parse_clock(time(9, 15)) == time(9, 15)
    with pytest.raises(ValueError):
        parse_clock('quarter past three')
