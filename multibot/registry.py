import logging
import re
import threading
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Pattern, Union

from multibot.errors import AgentAlreadyRegistered
from multibot.signals import agent_registered, agent_unregistered

if TYPE_CHECKING:
    from multibot.agent import Agent, AgentIdentity


LOGGER = logging.getLogger(__name__)


class _All:

    def __repr__(self) -> str:
        return "ALL"


ALL = _All()

Selector = Union[_All, str, Pattern, type, Callable[["AgentIdentity"], bool]]


def selector_matcher(selector: Selector) -> Callable[["Agent"], bool]:
    """
    Build a test for one agent from a broadcast selector: ALL, an exact
    agent name, a compiled regular expression searched in the agent name,
    an Agent subclass or a predicate over the agent's identity.
    """
    from multibot.agent import Agent

    if selector is ALL or selector is None:
        return lambda agent: True
    if isinstance(selector, str):
        return lambda agent: agent.name == selector
    if isinstance(selector, re.Pattern):
        return lambda agent: selector.search(agent.name) is not None
    if isinstance(selector, type) and issubclass(selector, Agent):
        return lambda agent: isinstance(agent, selector)
    if callable(selector):
        return lambda agent: bool(selector(agent.identity))
    raise TypeError(f"Invalid agent selector: {selector!r}")


class AgentRegistry:
    """
    The live agents, by name. Safe to use from several threads; each
    operation is atomic with respect to the others.
    """
    def __init__(self) -> None:
        self._agents: Dict[str, "Agent"] = {}
        self._lock = threading.RLock()

    def register(self, agent: "Agent") -> None:
        with self._lock:
            if agent.name in self._agents:
                raise AgentAlreadyRegistered(agent.name)
            self._agents[agent.name] = agent
        LOGGER.info("Registered agent %s", agent.name)
        agent_registered.send(self, agent=agent)

    def unregister(self, name: str) -> Optional["Agent"]:
        with self._lock:
            agent = self._agents.pop(name, None)
        if agent is not None:
            LOGGER.info("Unregistered agent %s", name)
            agent_unregistered.send(self, agent=agent)
        return agent

    def get(self, name: str) -> Optional["Agent"]:
        with self._lock:
            return self._agents.get(name)

    def all(self) -> List["Agent"]:
        with self._lock:
            return list(self._agents.values())

    def names(self) -> List[str]:
        with self._lock:
            return list(self._agents)

    def select(self, selector: Selector = ALL) -> List["Agent"]:
        matches = selector_matcher(selector)
        return [agent for agent in self.all() if matches(agent)]

    def clear(self) -> List["Agent"]:
        with self._lock:
            agents = list(self._agents.values())
            self._agents.clear()
        for agent in agents:
            agent_unregistered.send(self, agent=agent)
        return agents

    def __contains__(self, name: Any) -> bool:
        with self._lock:
            return name in self._agents

    def __len__(self) -> int:
        with self._lock:
            return len(self._agents)
