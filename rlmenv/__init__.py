"""rlmenv - Recursive Language Model execution scaffold.

The context of an RLM session lives outside the model's window, inside an
:class:`RLMEnvironment`.  The model writes Python against the environment to
read slices, plan chunks, store intermediate results, and delegate reading to
recursive sub-calls, serially or as a parallel batch.

Example:
    >>> from rlmenv import RLM
    >>> from rlmenv.backends import AnthropicBackend
    >>>
    >>> rlm = RLM(AnthropicBackend(), model="claude-sonnet-4-5", max_depth=1)
    >>> result = rlm.completion(context=open("document.txt").read(),
    ...                         query="What are the main themes?")
    >>> print(result.answer)
"""

from .backends import (
    AnthropicBackend,
    CallbackBackend,
    CompletionResult,
    LLMBackend,
    OpenAICompatibleBackend,
    TokenUsage,
)
from .config import (
    ConfigError,
    DefaultsConfig,
    ResolvedRoleConfig,
    RLMConfig,
    RoleConfig,
    SettingsConfig,
    load_config,
)
from .context import ChunkDescriptor, ContextBuffer, plan_chunks
from .dispatcher import SubCallConfig, SubCallFailure, SubCallResult, check_batch
from .environment import RLMEnvironment
from .errors import (
    BackendError,
    BackendTimeoutError,
    BatchPartialFailureError,
    DepthExceededError,
    InvalidParameterError,
    RangeError,
    RLMError,
    SafetyBreakError,
    SandboxViolationError,
    SessionFailedError,
    VariableNotFoundError,
)
from .gateway import BackendGateway, GatewayStats
from .memory import MemoryStore
from .registry import SessionRegistry, SessionState
from .repl import REPLEnv, REPLResult
from .rlm import RLM, RLMResult, RLMStats

__version__ = "0.1.0"

__all__ = [
    "RLM",
    "RLMResult",
    "RLMStats",
    "RLMEnvironment",
    "ContextBuffer",
    "ChunkDescriptor",
    "plan_chunks",
    "MemoryStore",
    "SubCallConfig",
    "SubCallFailure",
    "SubCallResult",
    "check_batch",
    "BackendGateway",
    "GatewayStats",
    "SessionRegistry",
    "SessionState",
    "LLMBackend",
    "AnthropicBackend",
    "OpenAICompatibleBackend",
    "CallbackBackend",
    "CompletionResult",
    "TokenUsage",
    "REPLEnv",
    "REPLResult",
    "RLMConfig",
    "DefaultsConfig",
    "RoleConfig",
    "ResolvedRoleConfig",
    "SettingsConfig",
    "ConfigError",
    "load_config",
    "RLMError",
    "RangeError",
    "InvalidParameterError",
    "DepthExceededError",
    "VariableNotFoundError",
    "BackendError",
    "BackendTimeoutError",
    "BatchPartialFailureError",
    "SafetyBreakError",
    "SandboxViolationError",
    "SessionFailedError",
]
