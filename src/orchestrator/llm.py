"""Model integration layer using LlamaIndex.

Supports model providers via LlamaIndex-compatible packages:
- Amazon Bedrock
- A mock model that echoes its prompt, for local runs and tests

The factory fetches transient credentials and returns an immutable
ModelHandle; no network call happens until the first completion.
"""

import asyncio
from typing import Any, Callable, Optional

from pydantic import BaseModel, ConfigDict, Field

from shared.auth import CredentialProvider
from shared.config import AWSSettings, ModelSettings
from shared.errors import GenerationError
from shared.logging import get_logger
from shared.models import AWSCredentials, SamplingParameters

logger = get_logger(__name__)

TokenCallback = Callable[[str], None]


class ModelHandle(BaseModel):
    """
    Configured handle to a remote text-generation model.

    Immutable after construction. The underlying LlamaIndex LLM is
    synchronous for Bedrock, so completions run in a worker thread.
    """
    model_config = ConfigDict(
        frozen=True, arbitrary_types_allowed=True, protected_namespaces=()
    )

    model_id: str
    region: str
    streaming: bool = True
    sampling: SamplingParameters = Field(default_factory=SamplingParameters)
    llm: Any = Field(exclude=True, repr=False)

    def _stream(self, prompt: str, on_token: Optional[TokenCallback]) -> str:
        deltas: list[str] = []
        last_text = ""
        for chunk in self.llm.stream_complete(prompt):
            if chunk.delta:
                deltas.append(chunk.delta)
                if on_token is not None:
                    on_token(chunk.delta)
            last_text = chunk.text
        return "".join(deltas) if deltas else last_text

    def _complete(self, prompt: str) -> str:
        return self.llm.complete(prompt).text

    async def acomplete(
        self,
        prompt: str,
        on_token: Optional[TokenCallback] = None
    ) -> str:
        """
        Generate a completion for a fully rendered prompt.

        Args:
            prompt: Prompt text
            on_token: Called with each streamed delta when streaming is enabled

        Returns:
            The generated text

        Raises:
            GenerationError: If the model invocation fails
        """
        try:
            if self.streaming:
                return await asyncio.to_thread(self._stream, prompt, on_token)
            return await asyncio.to_thread(self._complete, prompt)
        except Exception as e:
            logger.error("Model completion failed", model_id=self.model_id, error=str(e))
            raise GenerationError(f"Model {self.model_id} failed: {e}") from e


def _build_bedrock_llm(
    settings: ModelSettings,
    region: str,
    credentials: AWSCredentials
):
    """Build a LlamaIndex Bedrock LLM."""
    from llama_index.llms.bedrock import Bedrock

    return Bedrock(
        model=settings.model_id,
        region_name=region,
        temperature=settings.temperature,
        max_tokens=settings.max_tokens,
        additional_kwargs={
            "top_p": settings.top_p,
            "top_k": settings.top_k,
            "stop_sequences": list(settings.stop_sequences),
        },
        **credentials.client_kwargs(),
    )


def _build_mock_llm(
    settings: ModelSettings,
    region: str,
    credentials: AWSCredentials
):
    """Build a LlamaIndex MockLLM that echoes its prompt."""
    from llama_index.core.llms import MockLLM

    return MockLLM()


class ModelFactory:
    """
    Creates ModelHandles from fixed configuration.

    Configuration is set at construction; callers only decide when to
    obtain a handle.
    """

    _builders = {
        "bedrock": _build_bedrock_llm,
        "mock": _build_mock_llm,
    }

    def __init__(
        self,
        settings: ModelSettings,
        aws: AWSSettings,
        credentials: CredentialProvider
    ) -> None:
        """
        Initialize the factory.

        Args:
            settings: Model id, provider, streaming flag and sampling parameters
            aws: Region configuration
            credentials: Source of transient credentials

        Raises:
            ValueError: If the provider is not supported
        """
        if settings.provider not in self._builders:
            raise ValueError(
                f"Unsupported model provider: {settings.provider}. "
                f"Supported: {list(self._builders.keys())}"
            )

        self.settings = settings
        self.region = aws.region
        self.credentials = credentials

    @property
    def sampling(self) -> SamplingParameters:
        """Sampling parameters applied to every handle."""
        return SamplingParameters(
            max_tokens=self.settings.max_tokens,
            temperature=self.settings.temperature,
            top_p=self.settings.top_p,
            top_k=self.settings.top_k,
            stop_sequences=tuple(self.settings.stop_sequences),
        )

    async def get_model(self) -> ModelHandle:
        """
        Obtain credentials and construct a model handle.

        Raises:
            AuthError: If credential acquisition fails
        """
        credentials = await self.credentials.fetch_session()

        build = self._builders[self.settings.provider]
        llm = build(self.settings, self.region, credentials)

        logger.debug(
            "Model handle created",
            provider=self.settings.provider,
            model_id=self.settings.model_id,
            region=self.region
        )

        return ModelHandle(
            model_id=self.settings.model_id,
            region=self.region,
            streaming=self.settings.streaming,
            sampling=self.sampling,
            llm=llm,
        )
