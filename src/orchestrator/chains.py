"""Conversation and retrieval chains.

A chain maps an input mapping to an output mapping through one or more
model and retriever invocations. Prompts are fixed when a chain is built.
Memory is written once per call, after every step has succeeded.
"""

from abc import ABC, abstractmethod
from typing import Any, Mapping, Optional, Union

from llama_index.core import PromptTemplate

from shared.config import PersonaSettings, RetrievalSettings, get_settings
from shared.errors import ChatCoreError, InputValidationError, RetrievalError
from shared.logging import get_logger
from shared.models import RetrievedDocument
from orchestrator.llm import ModelHandle, TokenCallback
from orchestrator.memory import ConversationMemory
from orchestrator.prompts import (
    answer_prompt,
    condense_question_prompt,
    conversation_prompt,
    qa_prompt,
    render_prompt,
)
from orchestrator.retrievers import KnowledgeBaseRetriever, Retriever

logger = get_logger(__name__)

DOCUMENT_SEPARATOR = "\n\n"


def default_k(retriever: Retriever, settings: Optional[RetrievalSettings] = None) -> int:
    """
    Result count used when the caller does not choose one.

    Knowledge base retrievers use knowledge_base_k, everything else
    vector_store_k. Without explicit settings the application settings apply.
    """
    settings = settings or get_settings().retrieval
    if isinstance(retriever, KnowledgeBaseRetriever):
        return settings.knowledge_base_k
    return settings.vector_store_k


def combine_documents(documents: list[RetrievedDocument]) -> str:
    """Stuff document contents into a single context string."""
    return DOCUMENT_SEPARATOR.join(doc.content for doc in documents)


async def retrieve_documents(
    retriever: Retriever,
    query: str,
    k: int,
    filters: Optional[Any] = None
) -> list[RetrievedDocument]:
    """Run a retriever, reporting any backend failure as RetrievalError."""
    try:
        return await retriever.retrieve(query, k, filters)
    except ChatCoreError:
        raise
    except Exception as e:
        logger.error("Retrieval failed", k=k, error=str(e))
        raise RetrievalError(f"Retriever call failed: {e}") from e


class Chain(ABC):
    """Callable unit with declared input keys."""

    input_keys: tuple[str, ...] = ()
    output_key: str = "text"

    async def call(
        self,
        inputs: Union[Mapping[str, Any], str],
        on_token: Optional[TokenCallback] = None
    ) -> dict[str, Any]:
        """
        Run the chain.

        A bare string is accepted for chains with a single input key.

        Raises:
            InputValidationError: If a declared input key is absent; raised
                before any model or retriever call
            RetrievalError: If the retriever fails
            GenerationError: If the model fails
        """
        if isinstance(inputs, str):
            if len(self.input_keys) != 1:
                raise InputValidationError(
                    f"A single string input needs exactly one input key, got {list(self.input_keys)}"
                )
            inputs = {self.input_keys[0]: inputs}

        missing = [key for key in self.input_keys if inputs.get(key) is None]
        if missing:
            raise InputValidationError(
                f"Missing required input keys: {', '.join(missing)}",
                missing=missing
            )

        return await self._call(dict(inputs), on_token)

    @abstractmethod
    async def _call(
        self,
        inputs: dict[str, Any],
        on_token: Optional[TokenCallback]
    ) -> dict[str, Any]:
        pass


class ConversationChain(Chain):
    """Single-turn chat with running history."""

    input_keys = ("input",)
    output_key = "response"

    def __init__(
        self,
        model: ModelHandle,
        memory: ConversationMemory,
        prompt: Optional[PromptTemplate] = None,
        human_prefix: str = "Human",
        ai_prefix: str = "AI"
    ) -> None:
        self.model = model
        self.memory = memory
        self.prompt = prompt or conversation_prompt()
        self.human_prefix = human_prefix
        self.ai_prefix = ai_prefix

    async def _call(
        self,
        inputs: dict[str, Any],
        on_token: Optional[TokenCallback]
    ) -> dict[str, Any]:
        user_input = inputs["input"]
        prompt = render_prompt(self.prompt, {
            "history": self.memory.render(self.human_prefix, self.ai_prefix),
            "input": user_input,
        })

        response = await self.model.acomplete(prompt, on_token)
        await self.memory.save_turn(user_input, response)

        logger.info(
            "Conversation turn completed",
            session_id=self.memory.session_id,
            turns=len(self.memory)
        )
        return {self.output_key: response}


class ConversationalRetrievalChain(Chain):
    """
    Retrieval-augmented chat with history.

    Each call runs two phases:
    1. Condense the follow-up question and the chat history into a
       standalone query (skipped when there is no history)
    2. Retrieve documents for the standalone query and answer the
       original question from them, with the chat history in view
    """

    input_keys = ("question",)
    output_key = "text"

    def __init__(
        self,
        model: ModelHandle,
        retriever: Retriever,
        memory: ConversationMemory,
        condense_prompt: PromptTemplate,
        answer_prompt: PromptTemplate,
        k: int,
        return_source_documents: bool = False,
        human_prefix: str = "Human",
        ai_prefix: str = "Assistant"
    ) -> None:
        self.model = model
        self.retriever = retriever
        self.memory = memory
        self.condense_prompt = condense_prompt
        self.answer_prompt = answer_prompt
        self.k = k
        self.return_source_documents = return_source_documents
        self.human_prefix = human_prefix
        self.ai_prefix = ai_prefix

    async def condense_question(self, question: str, chat_history: str) -> str:
        """Rewrite a follow-up question so it can be searched without history."""
        if not chat_history:
            return question

        prompt = render_prompt(self.condense_prompt, {
            "chat_history": chat_history,
            "question": question,
        })
        standalone = (await self.model.acomplete(prompt)).strip()

        logger.debug("Question condensed", question=question, standalone=standalone)
        return standalone or question

    async def _call(
        self,
        inputs: dict[str, Any],
        on_token: Optional[TokenCallback]
    ) -> dict[str, Any]:
        question = inputs["question"]
        chat_history = self.memory.render(self.human_prefix, self.ai_prefix)

        standalone = await self.condense_question(question, chat_history)
        documents = await retrieve_documents(
            self.retriever, standalone, self.k, inputs.get("filter")
        )

        prompt = render_prompt(self.answer_prompt, {
            "context": combine_documents(documents),
            "chat_history": chat_history,
            "question": question,
        })
        answer = (await self.model.acomplete(prompt, on_token)).strip()

        await self.memory.save_turn(question, answer)

        logger.info(
            "Retrieval turn completed",
            session_id=self.memory.session_id,
            documents=len(documents)
        )

        result: dict[str, Any] = {self.output_key: answer}
        if self.return_source_documents:
            result["source_documents"] = documents
        return result


class RetrievalQAChain(Chain):
    """Single-shot question answering over retrieved documents, no memory."""

    input_keys = ("query",)
    output_key = "text"

    def __init__(
        self,
        model: ModelHandle,
        retriever: Retriever,
        k: int,
        prompt: Optional[PromptTemplate] = None,
        return_source_documents: bool = False
    ) -> None:
        self.model = model
        self.retriever = retriever
        self.prompt = prompt or qa_prompt()
        self.k = k
        self.return_source_documents = return_source_documents

    async def _call(
        self,
        inputs: dict[str, Any],
        on_token: Optional[TokenCallback]
    ) -> dict[str, Any]:
        query = inputs["query"]
        documents = await retrieve_documents(
            self.retriever, query, self.k, inputs.get("filter")
        )

        prompt = render_prompt(self.prompt, {
            "context": combine_documents(documents),
            "question": query,
        })
        answer = (await self.model.acomplete(prompt, on_token)).strip()

        result: dict[str, Any] = {self.output_key: answer}
        if self.return_source_documents:
            result["source_documents"] = documents
        return result


def get_chain(
    model: ModelHandle,
    memory: ConversationMemory,
    prompt: Optional[PromptTemplate] = None
) -> ConversationChain:
    """Build a conversation chain; the default prompt is the friendly-chat template."""
    return ConversationChain(model, memory, prompt=prompt)


async def get_conversational_retrieval_qa_chain(
    model: ModelHandle,
    retriever: Retriever,
    memory: ConversationMemory,
    *,
    k: Optional[int] = None,
    condense_prompt: Optional[PromptTemplate] = None,
    answer_prompt_template: Optional[PromptTemplate] = None,
    persona: Optional[PersonaSettings] = None,
    retrieval: Optional[RetrievalSettings] = None,
    return_source_documents: bool = False
) -> ConversationalRetrievalChain:
    """
    Build a retrieval chat chain.

    Args:
        model: Model used for both condensation and answering
        retriever: Vector store or knowledge base retriever
        memory: Session memory read for history and written after each turn
        k: Documents per retrieval; defaults to the configured count for the
            retriever kind (vector_store_k or knowledge_base_k)
        condense_prompt: Overrides the standalone-question prompt
        answer_prompt_template: Overrides the persona answer prompt
        persona: Persona bound into the default answer prompt
        retrieval: Result count settings; the application settings if None
        return_source_documents: Include retrieved documents in results
    """
    return ConversationalRetrievalChain(
        model=model,
        retriever=retriever,
        memory=memory,
        condense_prompt=condense_prompt or condense_question_prompt(),
        answer_prompt=answer_prompt_template or answer_prompt(persona),
        k=k if k is not None else default_k(retriever, retrieval),
        return_source_documents=return_source_documents,
    )


def get_retrieval_qa_chain(
    model: ModelHandle,
    retriever: Retriever,
    *,
    k: Optional[int] = None,
    prompt: Optional[PromptTemplate] = None,
    retrieval: Optional[RetrievalSettings] = None,
    return_source_documents: bool = False
) -> RetrievalQAChain:
    """Build a memory-less retrieval QA chain."""
    return RetrievalQAChain(
        model=model,
        retriever=retriever,
        prompt=prompt,
        k=k if k is not None else default_k(retriever, retrieval),
        return_source_documents=return_source_documents,
    )
