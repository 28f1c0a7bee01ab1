from pathlib import Path

from coin_dashboard.config import Settings


def test_defaults_from_empty_environment():
    settings = Settings.from_env({})

    assert settings.port == 8080
    assert settings.daemon_rpc_port == 19081
    assert settings.wallet_rpc_port == 19083
    assert settings.wallet_dir == settings.home_dir / "wallets"
    assert settings.daemon_http_url == "http://127.0.0.1:19081"
    assert settings.daemon_address == "127.0.0.1:19081"
    assert settings.wallet_rpc_url == "http://127.0.0.1:19083"


def test_home_override_moves_derived_directories(tmp_path):
    settings = Settings.from_env({"DASHBOARD_HOME": str(tmp_path)})

    assert settings.home_dir == tmp_path
    assert settings.data_dir == tmp_path / "data"
    assert settings.daemon_log_path == tmp_path / "logs" / "daemon.log"
    assert settings.xmrig_config_path == tmp_path / "xmrig-config.json"


def test_invalid_values_fall_back_to_defaults():
    settings = Settings.from_env(
        {
            "DASHBOARD_PORT": "not-a-port",
            "DASHBOARD_DAEMON_RPC_PORT": "70000",
            "DASHBOARD_RPC_TIMEOUT": "-1",
            "DASHBOARD_WALLET_READY_TIMEOUT": "soon",
        }
    )

    assert settings.port == 8080
    assert settings.daemon_rpc_port == 19081
    assert settings.rpc_timeout == 10.0
    assert settings.wallet_ready_timeout == 15.0


def test_explicit_overrides():
    settings = Settings.from_env(
        {
            "DASHBOARD_PORT": "9000",
            "DASHBOARD_WALLET_DIR": "/srv/wallets",
            "DASHBOARD_OPEN_BROWSER": "no",
            "DASHBOARD_DAEMON_SETTLE_SECONDS": "0.5",
        }
    )

    assert settings.port == 9000
    assert settings.wallet_dir == Path("/srv/wallets")
    assert settings.open_browser is False
    assert settings.daemon_settle_seconds == 0.5


def test_ensure_directories(tmp_path):
    settings = Settings().with_home(tmp_path / "home")

    settings.ensure_directories()

    assert settings.wallet_dir.is_dir()
    assert settings.data_dir.is_dir()
    assert settings.log_dir.is_dir()
