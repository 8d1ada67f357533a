#!/usr/bin/env python3
"""
Configuration system for Dice Goblin
Supports YAML files, environment credentials and CLI overrides
"""

import yaml
import argparse
import os
from pathlib import Path
from typing import Dict, Any, Optional
from dataclasses import dataclass, field
from copy import deepcopy
import logging


TOKEN_ENV_VAR = "DICE_GOBLIN_TOKEN"

TRANSPORT_MODES = ("polling", "webhook", "console")


class ConfigurationError(Exception):
    """Configuration could not be loaded or did not validate."""

    def __init__(self, message: str, errors: Optional[list] = None):
        super().__init__(message)
        self.errors = errors or []


_TYPE_NAMES = {bool: "true or false", int: "an integer", float: "a number", str: "a string"}


def _setting(data: Dict[str, Any], section: str, key: str, default: Any,
             kind: Optional[type] = None, nullable: bool = False) -> Any:
    """Read one setting, checking it has the type of its default"""
    value = data.get(key, default)
    if value is None and nullable:
        return None
    kind = kind or type(default)

    # bool is an int subclass; true/false is never a count or a delay
    if kind is float and isinstance(value, int) and not isinstance(value, bool):
        return float(value)
    if isinstance(value, kind) and not (kind is not bool and isinstance(value, bool)):
        return value
    raise ConfigurationError(f"{section}.{key} must be {_TYPE_NAMES[kind]}, got {value!r}")


@dataclass
class TelegramConfig:
    """Bot API credentials and endpoint"""
    token: str = ""                                # Prefer the DICE_GOBLIN_TOKEN env var
    api_base: str = "https://api.telegram.org"
    bot_username: Optional[str] = None             # Filled from getMe when empty

    def to_dict(self, include_secrets: bool = True) -> Dict[str, Any]:
        return {
            'token': self.token if include_secrets else "",
            'api_base': self.api_base,
            'bot_username': self.bot_username,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TelegramConfig':
        return cls(
            token=_setting(data, "telegram", "token", "", nullable=True) or "",
            api_base=_setting(data, "telegram", "api_base", "https://api.telegram.org"),
            bot_username=_setting(data, "telegram", "bot_username", None, kind=str, nullable=True),
        )


@dataclass
class TransportConfig:
    """How updates reach the bot"""
    mode: str = "polling"              # polling, webhook, console
    poll_timeout: int = 30             # getUpdates long-poll seconds
    request_timeout: float = 10.0      # Ordinary Bot API calls
    webhook_host: str = "0.0.0.0"
    webhook_port: int = 8443
    webhook_url: str = ""              # Public https URL Telegram posts to
    webhook_secret: str = ""

    def to_dict(self, include_secrets: bool = True) -> Dict[str, Any]:
        return {
            'mode': self.mode,
            'poll_timeout': self.poll_timeout,
            'request_timeout': self.request_timeout,
            'webhook_host': self.webhook_host,
            'webhook_port': self.webhook_port,
            'webhook_url': self.webhook_url,
            'webhook_secret': self.webhook_secret if include_secrets else "",
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TransportConfig':
        return cls(
            mode=_setting(data, "transport", "mode", "polling"),
            poll_timeout=_setting(data, "transport", "poll_timeout", 30),
            request_timeout=_setting(data, "transport", "request_timeout", 10.0),
            webhook_host=_setting(data, "transport", "webhook_host", "0.0.0.0"),
            webhook_port=_setting(data, "transport", "webhook_port", 8443),
            webhook_url=_setting(data, "transport", "webhook_url", "", nullable=True) or "",
            webhook_secret=_setting(data, "transport", "webhook_secret", "", nullable=True) or "",
        )


@dataclass
class CommandsConfig:
    """Command recognition"""
    prefix: str = "/"
    bare_notation: bool = False        # Roll plain "2d6" messages too

    def to_dict(self) -> Dict[str, Any]:
        return {
            'prefix': self.prefix,
            'bare_notation': self.bare_notation,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CommandsConfig':
        return cls(
            prefix=_setting(data, "commands", "prefix", "/"),
            bare_notation=_setting(data, "commands", "bare_notation", False),
        )


@dataclass
class DiceConfig:
    """Dice evaluation limits"""
    explosion_limit: int = 100

    def to_dict(self) -> Dict[str, Any]:
        return {'explosion_limit': self.explosion_limit}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DiceConfig':
        return cls(explosion_limit=_setting(data, "dice", "explosion_limit", 100))


@dataclass
class LoopConfig:
    """Update loop tuning"""
    workers: int = 4
    batch_size: int = 100              # Bot API allows 1-100
    backoff_initial: float = 1.0
    backoff_max: float = 60.0
    backoff_multiplier: float = 2.0
    backoff_jitter: float = 0.1        # Fraction of the delay, 0.0-1.0
    send_retries: int = 3
    send_interval: float = 0.05        # Seconds between sends

    def to_dict(self) -> Dict[str, Any]:
        return {
            'workers': self.workers,
            'batch_size': self.batch_size,
            'backoff_initial': self.backoff_initial,
            'backoff_max': self.backoff_max,
            'backoff_multiplier': self.backoff_multiplier,
            'backoff_jitter': self.backoff_jitter,
            'send_retries': self.send_retries,
            'send_interval': self.send_interval,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoopConfig':
        return cls(
            workers=_setting(data, "loop", "workers", 4),
            batch_size=_setting(data, "loop", "batch_size", 100),
            backoff_initial=_setting(data, "loop", "backoff_initial", 1.0),
            backoff_max=_setting(data, "loop", "backoff_max", 60.0),
            backoff_multiplier=_setting(data, "loop", "backoff_multiplier", 2.0),
            backoff_jitter=_setting(data, "loop", "backoff_jitter", 0.1),
            send_retries=_setting(data, "loop", "send_retries", 3),
            send_interval=_setting(data, "loop", "send_interval", 0.05),
        )


@dataclass
class ConsoleConfig:
    """Console messages logging level configuration"""
    verbose: bool = False
    quiet: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'verbose': self.verbose,
            'quiet': self.quiet,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ConsoleConfig':
        return cls(
            verbose=_setting(data, "console", "verbose", False),
            quiet=_setting(data, "console", "quiet", False),
        )


_SECTIONS = {
    'telegram': TelegramConfig,
    'transport': TransportConfig,
    'commands': CommandsConfig,
    'dice': DiceConfig,
    'loop': LoopConfig,
    'console': ConsoleConfig,
}


@dataclass
class DiceGoblinConfig:
    """Complete configuration for Dice Goblin"""
    telegram: TelegramConfig = field(default_factory=TelegramConfig)
    transport: TransportConfig = field(default_factory=TransportConfig)
    commands: CommandsConfig = field(default_factory=CommandsConfig)
    dice: DiceConfig = field(default_factory=DiceConfig)
    loop: LoopConfig = field(default_factory=LoopConfig)
    console: ConsoleConfig = field(default_factory=ConsoleConfig)

    # Metadata
    config_version: str = "1.0"

    def to_dict(self, include_secrets: bool = True) -> Dict[str, Any]:
        """Convert to dictionary for YAML serialization"""
        return {
            'config_version': self.config_version,
            'telegram': self.telegram.to_dict(include_secrets),
            'transport': self.transport.to_dict(include_secrets),
            'commands': self.commands.to_dict(),
            'dice': self.dice.to_dict(),
            'loop': self.loop.to_dict(),
            'console': self.console.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DiceGoblinConfig':
        """Create from dictionary (YAML loading); missing sections keep defaults"""
        config = cls()
        if 'config_version' in data:
            config.config_version = str(data['config_version'])
        for name, section_type in _SECTIONS.items():
            section = data.get(name)
            if section is None:
                continue
            if not isinstance(section, dict):
                raise ConfigurationError(f"Section '{name}' must be a mapping")
            setattr(config, name, section_type.from_dict(section))
        return config


class ConfigurationManager:
    """
    Manages configuration loading, merging, and validation
    """

    def __init__(self, config_file: str = "dice_goblin.yaml"):
        self.config_file = config_file
        self.config = None
        self.config_file_path = None

        self.logger = logging.getLogger(__name__)

        # Standard config file locations (in order of preference)
        self.config_search_paths = [
            Path.cwd() / "dice_goblin.yaml",  # Current directory
            Path.cwd() / "config" / "dice_goblin.yaml",  # Config subdirectory
            Path.home() / ".config" / "dice_goblin" / "config.yaml",  # User config
            Path("/etc/dice_goblin/config.yaml"),  # System config (Linux)
        ]

    def load_config(self, config_file: Optional[str] = None) -> DiceGoblinConfig:
        """
        Load configuration from file with fallback chain

        Args:
            config_file: Specific config file path, or None for auto-discovery

        Returns:
            Loaded configuration object (defaults when no file is found)

        Raises:
            ConfigurationError: the file exists but cannot be read or parsed
        """
        self.config = DiceGoblinConfig()
        if config_file:
            # Use specified file
            config_path = Path(config_file)
            if config_path.exists():
                self.config = self._load_yaml_file(config_path)
                self.config_file_path = config_path
                self.logger.info(f"Loaded config from: {config_path}")
            else:
                self.logger.warning(f"Config file not found: {config_path}")
                self.logger.info("Using default configuration")
        else:
            # Auto-discover config file
            for path in self.config_search_paths:
                if path.exists():
                    self.config = self._load_yaml_file(path)
                    self.config_file_path = path
                    self.logger.info(f"Auto-discovered config: {path}")
                    break
            else:
                self.logger.info("No config file found, using defaults")

        return self.config

    def _load_yaml_file(self, file_path: Path) -> DiceGoblinConfig:
        """Load configuration from YAML file"""
        try:
            with open(file_path, 'r') as f:
                yaml_data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Error loading config file {file_path}: {e}") from e

        if not isinstance(yaml_data, dict):
            raise ConfigurationError(f"Config file {file_path} must contain a mapping")

        for key in yaml_data:
            if key not in _SECTIONS and key != 'config_version':
                self.logger.warning(f"Unknown config section '{key}' in {file_path}")

        return DiceGoblinConfig.from_dict(yaml_data)

    def apply_environment(self, environ: Optional[Dict[str, str]] = None) -> DiceGoblinConfig:
        """Take the bot token from the environment when it is set there"""
        if self.config is None:
            self.config = DiceGoblinConfig()
        if environ is None:
            environ = os.environ

        token = environ.get(TOKEN_ENV_VAR)
        if token:
            self.config.telegram.token = token.strip()
            self.logger.debug(f"Bot token taken from {TOKEN_ENV_VAR}")
        return self.config

    def merge_cli_args(self, args: argparse.Namespace) -> DiceGoblinConfig:
        """
        Merge CLI arguments into configuration (CLI takes precedence)

        Args:
            args: Parsed command line arguments

        Returns:
            Updated configuration
        """
        # Make sure we have a config to work with
        if self.config is None:
            self.config = DiceGoblinConfig()

        # Telegram settings
        if getattr(args, 'api_base', None):
            self.config.telegram.api_base = args.api_base
        if getattr(args, 'bot_username', None):
            self.config.telegram.bot_username = args.bot_username

        # Transport settings
        if getattr(args, 'mode', None):
            self.config.transport.mode = args.mode
        if getattr(args, 'console', False):
            self.config.transport.mode = "console"
        if getattr(args, 'poll_timeout', None) is not None:
            self.config.transport.poll_timeout = args.poll_timeout
        if getattr(args, 'webhook_url', None):
            self.config.transport.webhook_url = args.webhook_url
        if getattr(args, 'webhook_host', None):
            self.config.transport.webhook_host = args.webhook_host
        if getattr(args, 'webhook_port', None) is not None:
            self.config.transport.webhook_port = args.webhook_port

        # Command settings
        if getattr(args, 'prefix', None):
            self.config.commands.prefix = args.prefix
        if getattr(args, 'bare_notation', False):
            self.config.commands.bare_notation = True

        # Dice settings
        if getattr(args, 'explosion_limit', None) is not None:
            self.config.dice.explosion_limit = args.explosion_limit

        # Loop settings
        if getattr(args, 'workers', None) is not None:
            self.config.loop.workers = args.workers

        # Debug settings
        if getattr(args, 'verbose', False):
            self.config.console.verbose = True
        if getattr(args, 'quiet', False):
            self.config.console.quiet = True

        return self.config

    def save_config(self, file_path: Optional[str] = None) -> bool:
        """
        Save current configuration to YAML file

        The bot token and webhook secret are never written; keep them in
        the environment or edit them into the file by hand.

        Args:
            file_path: Target file path, or None to use loaded file path

        Returns:
            True if saved successfully
        """
        if file_path:
            target_path = Path(file_path)
        elif self.config_file_path:
            target_path = self.config_file_path
        else:
            target_path = Path(self.config_file)

        try:
            # Ensure directory exists
            target_path.parent.mkdir(parents=True, exist_ok=True)

            config_dict = self.config.to_dict(include_secrets=False)

            with open(target_path, 'w') as f:
                f.write("# Dice Goblin Configuration\n")
                f.write("# Generated configuration file\n")
                f.write(f"# Version: {self.config.config_version}\n\n")

                yaml.dump(config_dict, f,
                          default_flow_style=False,
                          sort_keys=False,
                          indent=2)

            self.logger.info(f"Configuration saved to: {target_path}")
            return True

        except OSError as e:
            self.logger.error(f"Error saving config to {target_path}: {e}")
            return False

    def create_sample_config(self, file_path: str = "dice_goblin_sample.yaml") -> bool:
        """Create a sample configuration file with comments"""
        try:
            with open(file_path, 'w') as f:
                f.write(self._generate_sample_yaml())

            print(f"Sample configuration created: {file_path}")
            return True

        except OSError as e:
            print(f"Error creating sample config: {e}")
            return False

    def _generate_sample_yaml(self) -> str:
        """Generate sample YAML with extensive comments"""
        return """# Dice Goblin Configuration File
# Load order (later overrides earlier): defaults, this file,
# the DICE_GOBLIN_TOKEN environment variable, command line.

# =============================================================================
# TELEGRAM SETTINGS
# =============================================================================
telegram:
  token: ""                       # Bot token from @BotFather (prefer DICE_GOBLIN_TOKEN)
  api_base: "https://api.telegram.org"
  bot_username: null              # Looked up with getMe when left empty

# =============================================================================
# TRANSPORT SETTINGS
# =============================================================================
transport:
  mode: "polling"                 # polling, webhook or console
  poll_timeout: 30                # Long-poll seconds for getUpdates
  request_timeout: 10.0           # Timeout for other Bot API calls (seconds)
  # Webhook mode only:
  webhook_host: "0.0.0.0"         # Address the receiver listens on
  webhook_port: 8443              # Port the receiver listens on
  webhook_url: ""                 # Public https URL registered with Telegram
  webhook_secret: ""              # Checked against X-Telegram-Bot-Api-Secret-Token

# =============================================================================
# COMMAND SETTINGS
# =============================================================================
commands:
  prefix: "/"                     # Command prefix
  bare_notation: false            # Also roll plain messages like "2d6+1"

# =============================================================================
# DICE SETTINGS
# =============================================================================
dice:
  explosion_limit: 100            # Max extra dice from explosions per term

# =============================================================================
# UPDATE LOOP SETTINGS
# =============================================================================
loop:
  workers: 4                      # Threads rolling dice in parallel
  batch_size: 100                 # Updates per getUpdates call (1-100)
  backoff_initial: 1.0            # First retry delay after a failure (seconds)
  backoff_max: 60.0               # Longest retry delay (seconds)
  backoff_multiplier: 2.0         # Delay growth per consecutive failure
  backoff_jitter: 0.1             # Random +/- fraction applied to each delay
  send_retries: 3                 # Retries per reply before it is dropped
  send_interval: 0.05             # Pause between replies (seconds)

# =============================================================================
# CONSOLE MESSAGES LOGGING LEVEL
# =============================================================================
console:
  verbose: false                  # Verbose output (more detail)
  quiet: false                    # Quiet mode (minimal output)

config_version: "1.0"
"""

    def validate_config(self) -> tuple[bool, list[str]]:
        """
        Validate configuration for common issues

        Returns:
            (is_valid, list_of_errors)
        """
        errors = []
        telegram = self.config.telegram
        transport = self.config.transport
        loop = self.config.loop

        # Validate transport
        if transport.mode not in TRANSPORT_MODES:
            errors.append(f"Invalid transport mode: {transport.mode}. Must be one of {', '.join(TRANSPORT_MODES)}")

        if transport.mode != "console" and not telegram.token:
            errors.append(f"Bot token must be set (config file or {TOKEN_ENV_VAR})")

        if transport.poll_timeout < 0:
            errors.append(f"Invalid poll timeout: {transport.poll_timeout}")

        if transport.request_timeout <= 0:
            errors.append(f"Invalid request timeout: {transport.request_timeout}")

        if transport.mode == "webhook":
            if not transport.webhook_url.startswith("https://"):
                errors.append("Webhook mode needs an https:// webhook_url")
            if not (1 <= transport.webhook_port <= 65535):
                errors.append(f"Invalid webhook port: {transport.webhook_port}")

        # Validate commands
        prefix = self.config.commands.prefix
        if not prefix or any(c.isspace() for c in prefix):
            errors.append(f"Invalid command prefix: {prefix!r}")

        # Validate dice
        if self.config.dice.explosion_limit < 0:
            errors.append(f"Invalid explosion limit: {self.config.dice.explosion_limit}")

        # Validate loop
        if loop.workers < 1:
            errors.append(f"Invalid worker count: {loop.workers}")
        if not (1 <= loop.batch_size <= 100):
            errors.append(f"Invalid batch size: {loop.batch_size}. Must be between 1 and 100")
        if loop.backoff_initial <= 0:
            errors.append(f"Invalid backoff_initial: {loop.backoff_initial}")
        if loop.backoff_max < loop.backoff_initial:
            errors.append("backoff_max must not be smaller than backoff_initial")
        if loop.backoff_multiplier < 1:
            errors.append(f"Invalid backoff_multiplier: {loop.backoff_multiplier}")
        if not (0 <= loop.backoff_jitter <= 1):
            errors.append(f"Invalid backoff_jitter: {loop.backoff_jitter}. Must be between 0 and 1")
        if loop.send_retries < 0:
            errors.append(f"Invalid send_retries: {loop.send_retries}")
        if loop.send_interval < 0:
            errors.append(f"Invalid send_interval: {loop.send_interval}")

        return len(errors) == 0, errors

    def get_config(self) -> DiceGoblinConfig:
        """Get current configuration"""
        return deepcopy(self.config)


def create_enhanced_argument_parser():
    """Argument parser for the bot"""
    parser = argparse.ArgumentParser(
        description='Dice Goblin, a Telegram dice-rolling bot',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  DICE_GOBLIN_TOKEN=123:abc %(prog)s        # Long-poll Telegram with defaults
  %(prog)s --console                        # Roll dice in the terminal, no Telegram
  %(prog)s --mode webhook --webhook-url https://example.org/telegram/webhook
  %(prog)s -c my_config.yaml                # Use specific config file
  %(prog)s --create-config sample.yaml      # Create sample config file

Configuration:
  Configuration is loaded in this order (later overrides earlier):
  1. Built-in defaults
  2. Configuration file (YAML)
  3. DICE_GOBLIN_TOKEN environment variable
  4. Command line arguments

  Config file search order:
  - dice_goblin.yaml (current directory)
  - config/dice_goblin.yaml
  - ~/.config/dice_goblin/config.yaml
  - /etc/dice_goblin/config.yaml
        """
    )

    # Configuration file handling
    config_group = parser.add_argument_group('Configuration')
    config_group.add_argument(
        '-c', '--config',
        type=str,
        help='Configuration file path (YAML format)'
    )
    config_group.add_argument(
        '--create-config',
        type=str,
        metavar='FILE',
        help='Create sample configuration file and exit'
    )
    config_group.add_argument(
        '--save-config',
        type=str,
        metavar='FILE',
        help='Save current configuration to file'
    )

    # Telegram settings
    telegram_group = parser.add_argument_group('Telegram Settings')
    telegram_group.add_argument(
        '--api-base',
        type=str,
        help='Bot API base URL'
    )
    telegram_group.add_argument(
        '--bot-username',
        type=str,
        help='Bot username for /command@BotName matching (default: from getMe)'
    )

    # Transport settings
    transport_group = parser.add_argument_group('Transport Settings')
    transport_group.add_argument(
        '--mode',
        choices=list(TRANSPORT_MODES),
        help='How to receive updates'
    )
    transport_group.add_argument(
        '--console',
        action='store_true',
        help='Shortcut for --mode console'
    )
    transport_group.add_argument(
        '--poll-timeout',
        type=int,
        help='Long-poll timeout in seconds'
    )
    transport_group.add_argument(
        '--webhook-url',
        type=str,
        help='Public https URL to register as the webhook'
    )
    transport_group.add_argument(
        '--webhook-host',
        type=str,
        help='Address for the webhook receiver to listen on'
    )
    transport_group.add_argument(
        '--webhook-port',
        type=int,
        help='Port for the webhook receiver to listen on'
    )

    # Command settings
    command_group = parser.add_argument_group('Commands')
    command_group.add_argument(
        '--prefix',
        type=str,
        help='Command prefix (default: /)'
    )
    command_group.add_argument(
        '--bare-notation',
        action='store_true',
        help='Also roll plain messages that are dice notation'
    )
    command_group.add_argument(
        '--explosion-limit',
        type=int,
        help='Maximum extra dice from explosions per term'
    )
    command_group.add_argument(
        '--workers',
        type=int,
        help='Worker threads for rolling dice'
    )

    # Debug settings
    debug_group = parser.add_argument_group('Debug Options')
    debug_group.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Enable verbose debug output'
    )
    debug_group.add_argument(
        '-q', '--quiet',
        action='store_true',
        help='Quiet mode (minimal output)'
    )
    debug_group.add_argument(
        '--log-file',
        type=str,
        help='Log file path'
    )

    return parser


def setup_configuration(argv=None, environ=None) -> tuple[Optional[DiceGoblinConfig], bool, Optional[ConfigurationManager], argparse.Namespace]:
    """
    Setup configuration system with CLI integration

    Args:
        argv: Command line arguments (None for sys.argv)
        environ: Environment mapping (None for os.environ)

    Returns:
        (config_object, should_exit, config_manager, args)

    Raises:
        ConfigurationError: the file could not be loaded or the result is invalid
    """
    parser = create_enhanced_argument_parser()
    args = parser.parse_args(argv)

    # Handle special commands first
    if args.create_config:
        manager = ConfigurationManager()
        if not manager.create_sample_config(args.create_config):
            raise ConfigurationError(f"Could not write {args.create_config}")
        print(f"Edit the file and run again with: -c {args.create_config}")
        return None, True, None, args

    manager = ConfigurationManager()
    manager.load_config(args.config)
    manager.apply_environment(environ)
    config = manager.merge_cli_args(args)

    is_valid, errors = manager.validate_config()
    if not is_valid:
        raise ConfigurationError("Invalid configuration", errors)

    # Save config if requested
    if args.save_config:
        if manager.save_config(args.save_config):
            print(f"Configuration saved to: {args.save_config}")

    return config, False, manager, args
