"""
LLM Services Module
Completion clients and prompt templates used by query expansion and context compression
"""
from llm_services.clients import (
    LLMBackend,
    OpenAIClient,
    OllamaClient,
    create_client
)
from llm_services.prompt_templates import (
    IRRELEVANT_MARKER,
    PromptType,
    PromptTemplate,
    PromptTemplateLibrary
)

__all__ = [
    # Clients
    "LLMBackend",
    "OpenAIClient",
    "OllamaClient",
    "create_client",

    # Prompts
    "IRRELEVANT_MARKER",
    "PromptType",
    "PromptTemplate",
    "PromptTemplateLibrary"
]
