from tern.bus import EventBus
from tern.config import Config, get_config
from tern.context.builder import DefaultContextBuilder
from tern.context.store import SessionStore
from tern.core.models import Session
from tern.core.orchestrator import EmitCallback, HookCallback, Orchestrator
from tern.database import Database
from tern.llm.endpoint import HttpModelEndpoint, ModelEndpoint
from tern.llm.retry import RetryPolicy
from tern.logging import get_logger
from tern.patch.engine import PatchEngine
from tern.permissions import AuditLog, ConfirmCallback, PermissionGate
from tern.tools.exec import ExecProvider
from tern.tools.filesystem import FilesystemProvider
from tern.tools.registry import ProviderRegistry
from tern.tools.remote import RemoteToolProvider

_logger = get_logger(__name__)


class Runtime:
    """Wires configuration, storage, providers and the orchestrator for one session."""

    def __init__(
        self,
        config: Config | None = None,
        endpoint: ModelEndpoint | None = None,
        confirm: ConfirmCallback | None = None,
        emit: EmitCallback | None = None,
        hooks: HookCallback | None = None,
    ):
        self.config = config or get_config()
        self.retry_policy = RetryPolicy()
        self.endpoint = endpoint
        self.confirm = confirm
        self.emit = emit
        self.hooks = hooks
        self.bus = EventBus()

        self.db = Database(self.config.sessions_db_path)
        self.store: SessionStore | None = None
        self.session: Session | None = None
        self.registry = ProviderRegistry()
        self.gate: PermissionGate | None = None
        self.orchestrator: Orchestrator | None = None
        self._connected = False

    def build_registry(self) -> ProviderRegistry:
        root = self.config.workspace
        registry = ProviderRegistry(
            FilesystemProvider(root),
            ExecProvider(root, timeout=self.config.exec_timeout),
        )
        for server in self.config.remote_servers:
            registry.register(RemoteToolProvider(server.id, server.url, retry_policy=self.retry_policy))
        return registry

    async def connect(self, resume: bool = True) -> None:
        if self._connected:
            return

        await self.db.connect()
        self.store = SessionStore(self.db.conn)
        await self.store.init_schema()

        if resume:
            self.session = await self.store.get_latest_session()
        if self.session is None:
            self.session = Session.create()
            _logger.info("Started session %s", self.session.session_id)

        if self.endpoint is None:
            self.endpoint = HttpModelEndpoint(
                self.config.api_base,
                api_key=self.config.api_key,
                timeout=self.config.request_timeout,
                retry_policy=self.retry_policy,
            )
        self.registry = self.build_registry()
        self.gate = PermissionGate(
            config=self.config.permissions,
            confirm=self.confirm,
            audit=AuditLog(self.config.audit_log_path),
        )
        self.orchestrator = Orchestrator(
            self.session,
            self.endpoint,
            self.registry,
            self.gate,
            model=self.config.model,
            root=self.config.workspace,
            engine=PatchEngine(self.config.workspace, self.session.journal, max_drift=self.config.max_drift),
            builder=DefaultContextBuilder(
                self.config.model,
                self.config.workspace,
                self.registry,
                one_liner_overrides=self.config.tool_call_overrides,
            ),
            store=self.store,
            bus=self.bus,
            emit=self.emit,
            hooks=self.hooks,
            max_tool_rounds=self.config.max_tool_rounds,
            context_tokens=self.config.context_tokens,
            compaction_threshold=self.config.compaction_threshold,
            tail_token_budget=self.config.tail_token_budget,
            allow_symlinks=self.config.allow_symlinks,
        )
        self._connected = True

    async def close(self) -> None:
        if self.orchestrator is not None:
            await self.orchestrator.close()
        elif self.endpoint is not None:
            await self.endpoint.close()
        await self.db.close()
        self._connected = False
