#!/usr/bin/env python3
"""
Dice Goblin, a Telegram dice-rolling bot

Entry point: loads configuration, sets up logging, connects the
chosen transport and runs the update loop until SIGINT/SIGTERM.

Exit codes:
    0   clean shutdown, or --create-config finished
    1   invalid configuration, rejected bot token, Telegram unreachable
"""

import logging
import signal
import sys
import threading
from typing import Callable, Optional

from config_manager import ConfigurationError, DiceGoblinConfig, setup_configuration
from console_chat import ConsoleTransport
from goblin_commands import build_dispatcher
from telegram_transport import AuthenticationError, TelegramTransport, TransportError
from update_loop import Backoff, UpdateLoop
from webhook_receiver import WebhookTransport


logger = logging.getLogger("dice_goblin")


def setup_logging(verbose: bool = False, quiet: bool = False, log_file: Optional[str] = None):
    """Console logging with the level picked from the console flags"""
    if verbose:
        level, fmt = logging.DEBUG, '🐛 %(message)s'
    elif quiet:
        level, fmt = logging.WARNING, '⚠️  %(message)s'
    else:
        level, fmt = logging.INFO, 'ℹ️  %(message)s'

    handlers = [logging.StreamHandler()]
    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(logging.Formatter('%(asctime)s %(levelname)s %(name)s: %(message)s'))
        handlers.append(file_handler)

    logging.basicConfig(level=level, format=fmt, handlers=handlers, force=True)

    # httpx logs every request URL at INFO, and Bot API URLs contain the token
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def build_transport(config: DiceGoblinConfig, on_console_eof: Callable[[], object]):
    """
    Create and connect the transport for the configured mode

    For Telegram modes the token is checked with getMe first and the
    bot's username is filled in when the config leaves it empty.

    Raises:
        AuthenticationError: the token was rejected
        TransportError: Telegram could not be reached
    """
    transport_config = config.transport

    if transport_config.mode == "console":
        console = ConsoleTransport(on_eof=on_console_eof)
        console.start()
        return console

    telegram = TelegramTransport(
        token=config.telegram.token,
        api_base=config.telegram.api_base,
        poll_timeout=transport_config.poll_timeout,
        request_timeout=transport_config.request_timeout,
        batch_size=config.loop.batch_size,
    )
    try:
        me = telegram.get_me()
        if not config.telegram.bot_username:
            config.telegram.bot_username = me.get("username")
        logger.info(f"🤖 Connected as @{me.get('username')}")

        if transport_config.mode == "webhook":
            webhook = WebhookTransport(
                telegram,
                secret=transport_config.webhook_secret,
                poll_timeout=transport_config.poll_timeout,
                batch_size=config.loop.batch_size,
                host=transport_config.webhook_host,
                port=transport_config.webhook_port,
                log_level="debug" if config.console.verbose else "warning",
            )
            webhook.start()
            webhook.register(transport_config.webhook_url)
            return webhook

        # getUpdates is refused while a webhook is registered
        telegram.delete_webhook()
        return telegram
    except TransportError:
        telegram.close()
        raise


def install_signal_handlers(shutdown: threading.Event):
    def request_shutdown(signum, frame):
        logger.info(f"🛑 {signal.Signals(signum).name} received, finishing current batch...")
        shutdown.set()

    signal.signal(signal.SIGINT, request_shutdown)
    signal.signal(signal.SIGTERM, request_shutdown)


def main(argv=None) -> int:
    try:
        config, should_exit, _, args = setup_configuration(argv)
    except ConfigurationError as e:
        print(f"✗ {e}")
        for error in e.errors:
            print(f"  ✗ {error}")
        return 1

    if should_exit:
        return 0

    setup_logging(config.console.verbose, config.console.quiet, args.log_file)

    if not config.console.quiet:
        print("-=" * 40)
        print("Dice Goblin")
        print("-=" * 40)

    shutdown = threading.Event()
    install_signal_handlers(shutdown)

    try:
        transport = build_transport(config, on_console_eof=shutdown.set)
    except AuthenticationError as e:
        logger.error(f"Telegram rejected the bot token: {e}")
        return 1
    except TransportError as e:
        logger.error(f"Could not reach Telegram: {e}")
        return 1

    dispatcher = build_dispatcher(
        prefix=config.commands.prefix,
        bot_username=config.telegram.bot_username,
        bare_notation=config.commands.bare_notation,
        explosion_limit=config.dice.explosion_limit,
    )

    loop_config = config.loop
    loop = UpdateLoop(
        transport,
        dispatcher,
        workers=loop_config.workers,
        send_retries=loop_config.send_retries,
        send_interval=loop_config.send_interval,
        backoff=Backoff(
            initial=loop_config.backoff_initial,
            maximum=loop_config.backoff_max,
            multiplier=loop_config.backoff_multiplier,
            jitter=loop_config.backoff_jitter,
        ),
        shutdown_event=shutdown,
    )

    logger.info(f"📡 Transport: {config.transport.mode}")
    try:
        loop.run()
    finally:
        transport.close()

    logger.info("Goodbye from the Dice Goblin!")
    return 0


if __name__ == "__main__":
    sys.exit(main())
