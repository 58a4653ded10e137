import logging
from typing import Any, Dict, List, Mapping, Optional, Type

from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from multibot.agent import Agent, EventResult
from multibot.bus import MessageBus
from multibot.context import ContextStore, utcnow
from multibot.errors import AgentAlreadyRegistered, RecipientUnavailable
from multibot.events import InboundEvent, ProtocolClient
from multibot.memory import MemoryStore
from multibot.metrics import Metrics
from multibot.models import create_tables
from multibot.registry import AgentRegistry
from multibot.settings import RuntimeConfig
from multibot.storage import SQLAlchemyContextBackend, SQLAlchemyMemoryBackend


LOGGER = logging.getLogger(__name__)


class Runtime:
    """
    Owns the stores, the agent registry and the bus that every agent in
    the process shares
    """
    def __init__(
        self,
        config: Optional[RuntimeConfig] = None,
        memory: Optional[MemoryStore] = None,
        contexts: Optional[ContextStore] = None,
        engine: Optional[AsyncEngine] = None,
    ) -> None:
        if config is None:
            config = RuntimeConfig()
        if memory is None:
            memory = MemoryStore()
        if contexts is None:
            contexts = ContextStore(history_size=config.agent_settings.history_size)

        self.config = config
        self.memory = memory
        self.contexts = contexts
        self.engine = engine
        self.registry = AgentRegistry()
        self.bus = MessageBus(self.registry)
        self.metrics = Metrics(accept=lambda agent: getattr(agent, "runtime", None) is self)
        self.metrics.connect(self.bus)
        self.stopping = False

    @classmethod
    async def create(cls, config: Optional[RuntimeConfig] = None) -> "Runtime":
        """
        Build a runtime for `config`, creating the database tables when a
        database URL is configured
        """
        if config is None:
            config = RuntimeConfig()
        if config.database_url is None:
            return cls(config)

        engine = create_async_engine(config.database_url)
        await create_tables(engine)
        LOGGER.info("Using database %s", engine.url.render_as_string(hide_password=True))

        return cls(
            config,
            memory=MemoryStore(SQLAlchemyMemoryBackend(engine)),
            contexts=ContextStore(
                SQLAlchemyContextBackend(engine),
                history_size=config.agent_settings.history_size,
            ),
            engine=engine,
        )

    async def start_agent(
        self,
        agent_cls: Type[Agent],
        name: str,
        client: ProtocolClient,
        settings: Optional[Mapping[str, Any]] = None,
    ) -> Agent:
        if self.stopping:
            raise RuntimeError("Runtime is shutting down")
        if name in self.registry:
            raise AgentAlreadyRegistered(name)

        agent = agent_cls(name, client, self, self.config.agent_settings, settings)
        agent.started_at = utcnow()
        self.registry.register(agent)
        agent.logger.info("Started as %s", agent.identity.user_id)
        return agent

    async def stop_agent(self, name: str) -> bool:
        """
        Unregister `name` so nothing new reaches it, then wait for the
        event it is currently handling, if any
        """
        agent = self.registry.unregister(name)
        if agent is None:
            return False
        async with agent._lock:
            agent.started_at = None
        agent.logger.info("Stopped")
        return True

    def get_agent(self, name: str) -> Optional[Agent]:
        return self.registry.get(name)

    async def deliver(self, name: str, event: InboundEvent) -> EventResult:
        """
        Hand an inbound protocol event to the agent called `name`
        """
        agent = self.registry.get(name)
        if agent is None:
            raise RecipientUnavailable(name)
        return await agent.handle_event(event)

    def status(self) -> List[Dict[str, Any]]:
        out = []
        for agent in self.registry.all():
            out.append({
                "name": agent.name,
                "user_id": agent.identity.user_id,
                "type": type(agent).__name__,
                "state": agent.state,
                "uptime": agent.uptime(),
                "events_handled": agent.events_handled,
                "commands": [spec.name for spec in agent.commands],
                "metrics": self.metrics.agent_metrics(agent.name),
            })
        return out

    async def close(self) -> None:
        self.stopping = True
        for name in self.registry.names():
            await self.stop_agent(name)
        self.metrics.disconnect()
        if self.engine is not None:
            await self.engine.dispose()
            self.engine = None

    async def __aenter__(self) -> "Runtime":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
