"""Public library API for snipcode: the Session class."""

from .agent import TurnResult, build_toolset, run_conversation_turn
from .backend import LlamaBackend
from .mcp_client import ServerConfig
from .prompt import Conversation, load_rules
from .report import ConfigError


class Session:
    """Programmatic interface to the conversation loop.

    Stores configuration as plain attributes. Tool servers are started on
    the first ``ask()`` and stopped by ``close()``; use ``async with`` to
    have that done for you. History carries over between ``ask()`` calls
    until ``reset()``.
    """

    def __init__(
        self,
        *,
        base_dir: str = ".",
        base_url: str = "http://127.0.0.1:8080",
        model: str = "local",
        temperature: float = 0.7,
        top_k: int = 40,
        top_p: float = 0.9,
        n_predict: int = 2048,
        max_rounds: int = 25,
        max_duration: float = 600.0,
        system_prompt: str | None = None,
        rules: list[str] | None = None,
        no_rules: bool = False,
        mcp_servers: list[ServerConfig] | None = None,
        verbose: bool = False,
        backend=None,
    ):
        if max_rounds < 1:
            raise ConfigError(f"max_rounds must be positive, got {max_rounds}")
        if max_duration <= 0:
            raise ConfigError(f"max_duration must be positive, got {max_duration}")

        self.base_dir = base_dir
        self.max_rounds = max_rounds
        self.max_duration = max_duration
        self.system_prompt = system_prompt
        self.rules = list(rules or [])
        self.no_rules = no_rules
        self.mcp_servers = list(mcp_servers or [])
        self.verbose = verbose
        self.backend = backend or LlamaBackend(
            base_url,
            model,
            temperature=temperature,
            top_k=top_k,
            top_p=top_p,
            n_predict=n_predict,
        )

        self.conversation = Conversation()
        self._registry = None
        self._executor = None
        self._preamble: str | None = None

    async def _setup(self) -> None:
        """One-time setup: connect servers, load rules, build the preamble."""
        if self._preamble is not None:
            return
        rules = (
            []
            if self.no_rules
            else load_rules(self.base_dir, self.rules, self.verbose)
        )
        self._registry, self._executor, self._preamble = await build_toolset(
            self.base_dir,
            servers=self.mcp_servers,
            rules=rules,
            system_prompt=self.system_prompt,
            verbose=self.verbose,
        )

    @property
    def registry(self):
        return self._registry

    @property
    def preamble(self) -> str | None:
        return self._preamble

    async def ask(self, question: str) -> TurnResult:
        """Ask a question, continuing the conversation so far."""
        await self._setup()
        return await run_conversation_turn(
            self.conversation,
            question,
            backend=self.backend,
            executor=self._executor,
            preamble=self._preamble,
            max_rounds=self.max_rounds,
            max_duration=self.max_duration,
            verbose=self.verbose,
        )

    def reset(self) -> None:
        """Forget the conversation. Tool servers stay connected."""
        self.conversation.clear()

    async def close(self) -> None:
        if self._registry is not None:
            await self._registry.disconnect_all()
        self._registry = None
        self._executor = None
        self._preamble = None

    async def __aenter__(self) -> "Session":
        await self._setup()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
