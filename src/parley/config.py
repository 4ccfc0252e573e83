import logging

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

LOG_FORMAT = '%(asctime)s:%(name)s:%(levelname)s:%(message)s'
LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


class ParleySettings(BaseSettings):
    """Runtime settings, read from ``PARLEY_*`` environment variables or
    a ``.env`` file.

    The OpenAI key also falls back to the conventional ``OPENAI_API_KEY``.

    Attributes:
        openai_api_key: Credential for the completion service.
        openai_base_url: Alternative OpenAI-compatible endpoint.
        model: Model name sent with every completion request.
        max_tokens: Completion length cap.
        temperature: Sampling temperature.
        tool_wait_timeout: Seconds to wait for a round's tools to settle.
        max_tool_rounds: Chained tool rounds allowed per turn.
        mcp_url: Tool-protocol server endpoint, if any.
        mcp_api_key: Bearer credential for the tool-protocol server.
        debug: Log raw stream records and emit diagnostic thread notes.
        log_level: Level passed to :func:`configure_logging`.
    """

    model_config = SettingsConfigDict(
        env_prefix="PARLEY_",
        env_file=".env",
        extra="ignore",
        populate_by_name=True,
    )

    openai_api_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices("PARLEY_OPENAI_API_KEY", "OPENAI_API_KEY"),
    )
    openai_base_url: str | None = None
    model: str = "gpt-4o"
    max_tokens: int = 1500
    temperature: float = 0.7
    tool_wait_timeout: float = 5.0
    max_tool_rounds: int = 5
    mcp_url: str | None = None
    mcp_api_key: str | None = None
    debug: bool = False
    log_level: str = "INFO"


def configure_logging(level: str | int = logging.INFO, log_file: str | None = None) -> None:
    """Install the parley log format on the root logger.

    Library modules only ever call ``logging.getLogger(__name__)``; an
    application calls this once at startup.
    """
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        handlers=handlers,
        force=True,
    )
