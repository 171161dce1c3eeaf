import asyncio
import os
import shutil

from dotenv import load_dotenv

from .chat_commands import ChatCommands
from .completion_engine import CompletionEngine
from .config_service import ConfigService
from .logger_factory import configure_logging, get_logger
from .mastodon_client_adapter import MastodonClient, MastodonStream
from .mention_dispatcher import MentionDispatcher
from .model_router import ModelRouter, build_client_factory
from .preference_store import PreferenceStore
from .prompt_library import PromptLibrary
from .prompt_template_engine import PromptTemplateEngine
from .safety_filter import SafetyFilter
from .session_store import SessionStore
from .task_queue import MentionsQueue
from .thread_resolver import ThreadResolver
from .utils.logfmt import fmt


def _copy_if_missing(target: str, template: str) -> None:
    if os.path.exists(target) or not os.path.exists(template):
        return
    try:
        shutil.copyfile(template, target)
    except OSError as e:
        get_logger("bot_app").warning(f"[template-copy-failed] {fmt('target', target)} {fmt('error', e)}")


class BotApp:
    """Owns every long-lived service of one bot process.

    Nothing here is module-global, so tests can build as many independent
    instances as they like from a ``ConfigService`` and fake collaborators.
    """

    def __init__(self, config: ConfigService, *, client=None, client_factory=None):
        self.config = config
        self.log = get_logger("bot_app")

        self.client = client or MastodonClient(config.mastodon_server(), config.mastodon_access_token())
        self.prompts = PromptLibrary(config.data_dir())
        self.prefs = PreferenceStore(config.data_dir())
        self.templates = PromptTemplateEngine(tz_name=config.timezone())
        self.safety = SafetyFilter(
            error_message=config.error_message(),
            system_prompt=config.leak_guard_prompt() or self.prompts.read_default().strip(),
            date_line=self.templates.date_line,
            extra_patterns=config.extra_blocked_patterns(),
        )
        provider = config.llm_provider()
        self.router = ModelRouter(
            config.model_names(),
            provider=provider,
            client_factory=client_factory or build_client_factory(config, provider),
            capabilities=config.model_capabilities(),
        )
        self.engine = CompletionEngine(
            router=self.router,
            safety=self.safety,
            templates=self.templates,
            error_message=config.error_message(),
            max_context_length=config.max_context_length(),
            timeout_seconds=config.request_timeout_seconds(),
            max_tokens=config.max_tokens(),
            temperature=config.temperature(),
            error_patterns=config.error_patterns(),
        )
        self.sessions = SessionStore(
            ttl_seconds=config.session_ttl_seconds(),
            max_sessions=config.max_sessions(),
            on_evict=lambda s: self.engine.forget(s.id),
        )
        self.commands = ChatCommands(self.prefs, self.prompts, clear_session=self.sessions.clear)
        # own acct is only known after identify(); resolve it lazily
        self.resolver = ThreadResolver(self.client, own_acct=lambda: self.dispatcher.me_acct)
        self.dispatcher = MentionDispatcher(
            self.client,
            resolver=self.resolver,
            sessions=self.sessions,
            engine=self.engine,
            commands=self.commands,
            prefs=self.prefs,
            prompts=self.prompts,
            domain=config.mastodon_domain(),
            include_past_posts=config.include_past_posts(),
            past_posts_limit=config.past_posts_limit(),
        )
        self.queue = MentionsQueue()
        self.stream = MastodonStream(
            self.client,
            self.queue.put_notification,
            reconnect_delay=config.reconnect_delay_seconds(),
        )

    async def identify(self) -> None:
        me = await self.client.verify_credentials()
        self.dispatcher.set_identity(me.get("acct") or me.get("username") or "", me.get("id"))
        self.log.info(f"[identity] {fmt('acct', self.dispatcher.me_acct)} {fmt('id', self.dispatcher.me_id)}")

    async def run(self) -> None:
        await self.identify()
        self.log.info(
            f"[bot-start] {fmt('server', self.config.mastodon_server())} {fmt('provider', self.router.provider)} "
            f"{fmt('models', ','.join(self.router.candidates))}"
        )
        try:
            await asyncio.gather(
                self.stream.run(),
                self.queue.run(self.dispatcher.handle_mention),
                self.sessions.sweep_forever(self.config.sweep_interval_seconds()),
            )
        finally:
            await self.aclose()

    async def aclose(self) -> None:
        await self.stream.stop()
        await self.router.aclose()
        await self.client.aclose()
        self.log.info("[bot-stopped]")


async def main() -> None:
    # Ensure env + config
    _copy_if_missing(".env", ".env.example")
    load_dotenv()
    _copy_if_missing("config.yaml", "config.example.yaml")

    config = ConfigService("config.yaml")
    configure_logging(
        level=config.log_level(),
        tz=config.timezone(),
        lib_log_level=config.lib_log_level(),
        console_to_file=config.log_console(),
        error_file=config.log_errors(),
    )
    logger = get_logger("bot_app")

    missing = config.missing_required_env()
    if missing:
        logger.error(f"[startup-missing-env] {fmt('names', ','.join(missing))}")
        raise SystemExit(1)

    await BotApp(config).run()


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        get_logger("bot_app").info("[bot-interrupted]")


if __name__ == "__main__":
    run()
