"""Shared test doubles."""

from typing import Any, Optional
from unittest.mock import MagicMock

import pytest
from llama_index.core.llms import CompletionResponse

from shared.errors import RetrievalError
from shared.models import RetrievedDocument
from orchestrator.llm import ModelHandle
from orchestrator.retrievers import Retriever


class FakeRetriever(Retriever):
    """Returns fixed documents and records every call."""

    def __init__(self, documents: Optional[list[str]] = None, fail: bool = False) -> None:
        self.documents = documents or []
        self.fail = fail
        self.calls: list[dict[str, Any]] = []

    async def retrieve(self, query, k, filters=None):
        self.calls.append({"query": query, "k": k, "filters": filters})
        if self.fail:
            raise RetrievalError("index unavailable")
        return [RetrievedDocument(content=text) for text in self.documents[:k]]


def scripted_model(*responses: str) -> ModelHandle:
    """Model handle whose completions return the given texts in order."""
    llm = MagicMock()
    llm.complete.side_effect = [CompletionResponse(text=text) for text in responses]
    return ModelHandle(model_id="test-model", region="us-east-1", streaming=False, llm=llm)


def prompts_sent(model: ModelHandle) -> list[str]:
    """Prompts passed to a scripted model, in call order."""
    return [c.args[0] for c in model.llm.complete.call_args_list]


@pytest.fixture
def fake_retriever():
    return FakeRetriever(["Rector: Prof. Dr. Nelly.", "The campus is in Jakarta."])


@pytest.fixture
def settings_file(tmp_path, monkeypatch):
    """Point get_settings() at a temporary YAML file written by the test."""
    from shared.config import get_settings

    path = tmp_path / "settings.yaml"

    def write(text: str):
        path.write_text(text)
        monkeypatch.setenv("CHAT_CONFIG_PATH", str(path))
        get_settings.cache_clear()
        return path

    yield write
    get_settings.cache_clear()
