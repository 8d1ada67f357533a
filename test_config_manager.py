"""
Tests for the Dice Goblin configuration system.

Covers YAML loading, the environment token, CLI overrides, validation
and the save/create-sample paths.

Run with:  python -m pytest test_config_manager.py -v
"""

import pytest
import yaml

from config_manager import (
    TOKEN_ENV_VAR,
    ConfigurationError,
    ConfigurationManager,
    DiceGoblinConfig,
    create_enhanced_argument_parser,
    setup_configuration,
)


@pytest.fixture(autouse=True)
def isolated_cwd(tmp_path, monkeypatch):
    # Keep auto-discovery away from any real dice_goblin.yaml
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv(TOKEN_ENV_VAR, raising=False)


def write_yaml(path, data):
    path.write_text(yaml.safe_dump(data))
    return path


def valid_manager(**overrides):
    manager = ConfigurationManager()
    manager.config = DiceGoblinConfig()
    manager.config.telegram.token = "123:abc"
    for section, values in overrides.items():
        for key, value in values.items():
            setattr(getattr(manager.config, section), key, value)
    return manager


# ============================================================
# Dataclasses
# ============================================================

class TestConfigObjects:

    def test_defaults(self):
        config = DiceGoblinConfig()
        assert config.transport.mode == "polling"
        assert config.commands.prefix == "/"
        assert config.dice.explosion_limit == 100
        assert config.loop.workers == 4
        assert config.loop.batch_size == 100

    def test_dict_round_trip(self):
        config = DiceGoblinConfig()
        config.telegram.token = "123:abc"
        config.commands.bare_notation = True
        config.loop.backoff_max = 30.0
        assert DiceGoblinConfig.from_dict(config.to_dict()) == config

    def test_secrets_left_out_on_request(self):
        config = DiceGoblinConfig()
        config.telegram.token = "123:abc"
        config.transport.webhook_secret = "s3cret"
        data = config.to_dict(include_secrets=False)
        assert data['telegram']['token'] == ""
        assert data['transport']['webhook_secret'] == ""

    def test_missing_sections_keep_defaults(self):
        config = DiceGoblinConfig.from_dict({'dice': {'explosion_limit': 7}})
        assert config.dice.explosion_limit == 7
        assert config.transport.mode == "polling"

    @pytest.mark.parametrize("data, name", [
        ({'loop': {'workers': "4"}}, "loop.workers"),
        ({'transport': {'poll_timeout': None}}, "transport.poll_timeout"),
        ({'loop': {'backoff_jitter': "lots"}}, "loop.backoff_jitter"),
        ({'dice': {'explosion_limit': True}}, "dice.explosion_limit"),
        ({'commands': {'bare_notation': "yes"}}, "commands.bare_notation"),
        ({'commands': {'prefix': 1}}, "commands.prefix"),
    ])
    def test_wrong_types_are_reported(self, data, name):
        with pytest.raises(ConfigurationError, match=name):
            DiceGoblinConfig.from_dict(data)

    def test_integers_accepted_for_float_settings(self):
        config = DiceGoblinConfig.from_dict({'loop': {'backoff_max': 30}, 'transport': {'request_timeout': 5}})
        assert config.loop.backoff_max == 30.0
        assert isinstance(config.transport.request_timeout, float)

    def test_empty_optional_strings(self):
        config = DiceGoblinConfig.from_dict({
            'telegram': {'token': None, 'bot_username': None},
            'transport': {'webhook_url': None},
        })
        assert config.telegram.token == ""
        assert config.telegram.bot_username is None
        assert config.transport.webhook_url == ""

    def test_section_must_be_mapping(self):
        with pytest.raises(ConfigurationError, match="loop"):
            DiceGoblinConfig.from_dict({'loop': [1, 2]})


# ============================================================
# Loading
# ============================================================

class TestLoading:

    def test_load_explicit_file(self, tmp_path):
        path = write_yaml(tmp_path / "bot.yaml", {
            'telegram': {'token': "123:abc"},
            'commands': {'prefix': "!", 'bare_notation': True},
        })
        config = ConfigurationManager().load_config(str(path))
        assert config.telegram.token == "123:abc"
        assert config.commands.prefix == "!"
        assert config.commands.bare_notation is True

    def test_missing_file_uses_defaults(self, tmp_path):
        config = ConfigurationManager().load_config(str(tmp_path / "nope.yaml"))
        assert config == DiceGoblinConfig()

    def test_auto_discovery(self, tmp_path):
        write_yaml(tmp_path / "dice_goblin.yaml", {'dice': {'explosion_limit': 12}})
        manager = ConfigurationManager()
        manager.config_search_paths = [tmp_path / "dice_goblin.yaml"]
        assert manager.load_config().dice.explosion_limit == 12
        assert manager.config_file_path == tmp_path / "dice_goblin.yaml"

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert ConfigurationManager().load_config(str(path)) == DiceGoblinConfig()

    def test_malformed_yaml(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("telegram: [unclosed\n")
        with pytest.raises(ConfigurationError, match="broken.yaml"):
            ConfigurationManager().load_config(str(path))

    def test_top_level_must_be_mapping(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- one\n- two\n")
        with pytest.raises(ConfigurationError, match="mapping"):
            ConfigurationManager().load_config(str(path))

    def test_wrong_type_in_file(self, tmp_path):
        path = tmp_path / "typo.yaml"
        path.write_text("loop:\n  workers: \"4\"\n")
        with pytest.raises(ConfigurationError, match="loop.workers"):
            ConfigurationManager().load_config(str(path))

    def test_unknown_section_warns(self, tmp_path, caplog):
        path = write_yaml(tmp_path / "extra.yaml", {'audio': {'rate': 48000}})
        ConfigurationManager().load_config(str(path))
        assert "Unknown config section 'audio'" in caplog.text

    def test_sample_config_loads(self, tmp_path):
        manager = ConfigurationManager()
        path = tmp_path / "sample.yaml"
        assert manager.create_sample_config(str(path))
        assert manager.load_config(str(path)) == DiceGoblinConfig()


# ============================================================
# Environment and CLI
# ============================================================

class TestOverrides:

    def test_environment_token_wins_over_file(self, tmp_path):
        path = write_yaml(tmp_path / "bot.yaml", {'telegram': {'token': "from-file"}})
        manager = ConfigurationManager()
        manager.load_config(str(path))
        manager.apply_environment({TOKEN_ENV_VAR: " from-env \n"})
        assert manager.config.telegram.token == "from-env"

    def test_empty_environment_token_ignored(self, tmp_path):
        path = write_yaml(tmp_path / "bot.yaml", {'telegram': {'token': "from-file"}})
        manager = ConfigurationManager()
        manager.load_config(str(path))
        manager.apply_environment({TOKEN_ENV_VAR: ""})
        assert manager.config.telegram.token == "from-file"

    def test_cli_overrides(self):
        args = create_enhanced_argument_parser().parse_args([
            '--mode', 'webhook',
            '--webhook-url', 'https://goblin.example/hook',
            '--webhook-port', '9000',
            '--prefix', '!',
            '--bare-notation',
            '--explosion-limit', '5',
            '--workers', '2',
            '--poll-timeout', '0',
            '-v',
        ])
        manager = ConfigurationManager()
        config = manager.merge_cli_args(args)
        assert config.transport.mode == "webhook"
        assert config.transport.webhook_url == "https://goblin.example/hook"
        assert config.transport.webhook_port == 9000
        assert config.transport.poll_timeout == 0
        assert config.commands.prefix == "!"
        assert config.commands.bare_notation is True
        assert config.dice.explosion_limit == 5
        assert config.loop.workers == 2
        assert config.console.verbose is True

    def test_console_flag(self):
        args = create_enhanced_argument_parser().parse_args(['--console'])
        assert ConfigurationManager().merge_cli_args(args).transport.mode == "console"

    def test_unset_flags_leave_file_values(self, tmp_path):
        path = write_yaml(tmp_path / "bot.yaml", {'loop': {'workers': 8}, 'commands': {'prefix': "!"}})
        manager = ConfigurationManager()
        manager.load_config(str(path))
        config = manager.merge_cli_args(create_enhanced_argument_parser().parse_args([]))
        assert config.loop.workers == 8
        assert config.commands.prefix == "!"

    def test_token_is_not_a_cli_option(self):
        with pytest.raises(SystemExit):
            create_enhanced_argument_parser().parse_args(['--token', '123:abc'])


# ============================================================
# Validation
# ============================================================

class TestValidation:

    def test_defaults_with_token_are_valid(self):
        assert valid_manager().validate_config() == (True, [])

    def test_token_required_for_telegram(self):
        manager = valid_manager()
        manager.config.telegram.token = ""
        is_valid, errors = manager.validate_config()
        assert not is_valid
        assert any(TOKEN_ENV_VAR in e for e in errors)

    def test_console_needs_no_token(self):
        manager = valid_manager(transport={'mode': "console"})
        manager.config.telegram.token = ""
        assert manager.validate_config()[0]

    def test_webhook_needs_https_url(self):
        is_valid, errors = valid_manager(transport={'mode': "webhook", 'webhook_url': "http://x"}).validate_config()
        assert not is_valid
        assert any("https://" in e for e in errors)

    @pytest.mark.parametrize("section, values", [
        ('transport', {'mode': "carrier-pigeon"}),
        ('transport', {'request_timeout': 0}),
        ('transport', {'mode': "webhook", 'webhook_url': "https://x", 'webhook_port': 70000}),
        ('commands', {'prefix': ""}),
        ('commands', {'prefix': "! "}),
        ('dice', {'explosion_limit': -1}),
        ('loop', {'workers': 0}),
        ('loop', {'batch_size': 101}),
        ('loop', {'backoff_initial': 0}),
        ('loop', {'backoff_initial': 10.0, 'backoff_max': 5.0}),
        ('loop', {'backoff_multiplier': 0.5}),
        ('loop', {'backoff_jitter': 1.5}),
        ('loop', {'send_retries': -1}),
        ('loop', {'send_interval': -0.1}),
    ])
    def test_invalid_values(self, section, values):
        is_valid, errors = valid_manager(**{section: values}).validate_config()
        assert not is_valid
        assert len(errors) == 1


# ============================================================
# Saving
# ============================================================

class TestSaving:

    def test_save_omits_secrets(self, tmp_path):
        manager = valid_manager(transport={'webhook_secret': "s3cret"})
        path = tmp_path / "out" / "saved.yaml"
        assert manager.save_config(str(path))

        text = path.read_text()
        assert "123:abc" not in text
        assert "s3cret" not in text
        saved = yaml.safe_load(text)
        assert saved['telegram']['token'] == ""
        assert saved['config_version'] == "1.0"

    def test_save_then_load(self, tmp_path):
        manager = valid_manager(commands={'prefix': "!"}, loop={'workers': 2})
        path = tmp_path / "saved.yaml"
        manager.save_config(str(path))
        loaded = ConfigurationManager().load_config(str(path))
        assert loaded.commands.prefix == "!"
        assert loaded.loop.workers == 2


# ============================================================
# setup_configuration
# ============================================================

class TestSetupConfiguration:

    def test_create_config_exits(self, tmp_path, capsys):
        path = tmp_path / "sample.yaml"
        config, should_exit, manager, args = setup_configuration(['--create-config', str(path)], environ={})
        assert config is None
        assert should_exit
        assert path.exists()
        assert "sample.yaml" in capsys.readouterr().out

    def test_token_from_environment(self):
        config, should_exit, manager, _ = setup_configuration([], environ={TOKEN_ENV_VAR: "123:abc"})
        assert not should_exit
        assert config.telegram.token == "123:abc"
        assert isinstance(manager, ConfigurationManager)

    def test_invalid_configuration_raises(self):
        with pytest.raises(ConfigurationError) as exc_info:
            setup_configuration([], environ={})
        assert any(TOKEN_ENV_VAR in e for e in exc_info.value.errors)

    def test_console_mode_without_token(self):
        config, should_exit, _, _ = setup_configuration(['--console'], environ={})
        assert config.transport.mode == "console"
        assert not should_exit

    def test_save_config_flag(self, tmp_path):
        path = tmp_path / "saved.yaml"
        setup_configuration(['--console', '--prefix', '!', '--save-config', str(path)], environ={})
        assert yaml.safe_load(path.read_text())['commands']['prefix'] == "!"

    def test_config_file_and_cli(self, tmp_path):
        path = write_yaml(tmp_path / "bot.yaml", {
            'telegram': {'token': "123:abc"},
            'dice': {'explosion_limit': 20},
        })
        config, _, _, _ = setup_configuration(['-c', str(path), '--explosion-limit', '3'], environ={})
        assert config.dice.explosion_limit == 3
