import asyncio
import sys
from pathlib import Path

from dotenv import load_dotenv
from pydantic import ValidationError

import services.error as error  # installs global uncaught-exception hook
import services.logger as log
import services.util as u
import services.config_io as config_io
from services.airtable import AirtableRecordStore
from services.bridge import Bridge, collect_sensitive
from services.config_schema import AppConfig, overlay_env
from services.identity import IdentityCache
from services.message import BridgeBinding
from services.shortener import LinkShortener
from services.transform import TextTransformer

from drivers.irc import IrcDriver
from drivers.slack import SlackDriver

l = log.get_logger()


def load_app_config() -> AppConfig | None:
    """Read the optional config file, overlay the environment and validate.

    Returns ``None`` (after logging why) when the result is unusable.
    """
    raw: dict = {}
    config_path = config_io.find_config(Path(u.get_data_path()))
    if config_path is not None:
        l.info(f"Loading config from: {config_path}")
        try:
            raw = config_io.load_config(config_path)
        except Exception as e:
            l.critical(f"Failed to read {config_path}: {e}")
            return None
    else:
        l.info(f"No config file in {u.get_data_path()}; using environment only")

    try:
        return AppConfig.model_validate(overlay_env(raw))
    except ValidationError as exc:
        l.critical(f"Config error:\n{exc}")
        return None


async def main():
    error.install_loop_handler(asyncio.get_running_loop())
    l.info("SlackIRCBridge starting…")

    cfg = load_app_config()
    if cfg is None:
        return False

    sensitive = collect_sensitive(cfg.model_dump())
    log.register_sensitive(sensitive)

    if cfg.startup_delay > 0:
        l.info(f"Waiting {cfg.startup_delay:g}s before connecting")
        await asyncio.sleep(cfg.startup_delay)

    store = None
    if cfg.airtable.enabled:
        store = AirtableRecordStore(
            cfg.airtable.base_id,
            cfg.airtable.api_key,
            table=cfg.airtable.table,
            handle_field=cfg.airtable.handle_field,
            url_field=cfg.airtable.url_field,
        )
    else:
        l.warning("No Airtable base configured; !picture is disabled")

    shortener = LinkShortener(cfg.shortener.api_key, cfg.shortener.api_url)
    if not shortener.enabled:
        l.info("No shortener API key configured; links are relayed as-is")

    binding = BridgeBinding(
        irc_channel=cfg.irc.channel,
        slack_channel=cfg.slack.channel,
        irc_channel_key=cfg.irc.channel_key or None,
    )
    bridge = Bridge(
        binding,
        irc_nick=cfg.irc.nickname,
        slack_bot_id=cfg.slack.bot_id,
        transformer=TextTransformer(shortener),
        identities=IdentityCache(store),
    )
    bridge.load_sensitive_values(cfg.model_dump())

    def _on_task_done(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            l.error(f"Driver '{task.get_name()}' crashed: {exc}")

    driver_tasks: list[asyncio.Task] = []
    for name, drv in (("irc", IrcDriver(cfg.irc, bridge)), ("slack", SlackDriver(cfg.slack, bridge))):
        task = asyncio.create_task(drv.start(), name=name)
        task.add_done_callback(_on_task_done)
        driver_tasks.append(task)
        l.info(f"Started driver: {name}")

    l.info(f"Bridging IRC {binding.irc_channel} <-> Slack {binding.slack_channel}")

    failed = False
    try:
        # Either side failing to start is fatal; otherwise both run forever
        done, pending = await asyncio.wait(driver_tasks, return_when=asyncio.FIRST_EXCEPTION)
        for task in done:
            if not task.cancelled() and task.exception() is not None:
                failed = True
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
    except asyncio.CancelledError:
        l.info("SlackIRCBridge shutting down…")
        for task in driver_tasks:
            task.cancel()
        await asyncio.gather(*driver_tasks, return_exceptions=True)
        l.info("SlackIRCBridge stopped.")
    finally:
        await shortener.close()
        if store is not None:
            await store.close()
    return not failed


if __name__ == "__main__":
    load_dotenv()
    try:
        ok = asyncio.run(main())
    except KeyboardInterrupt:
        ok = True
    sys.exit(0 if ok else 1)
