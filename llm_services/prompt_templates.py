"""
Prompt Templates for Retrieval-Side LLM Calls
Prompts used by query expansion and context compression
"""
from dataclasses import dataclass
from typing import Dict, List
from enum import Enum


IRRELEVANT_MARKER = "IRRELEVANT"


class PromptType(Enum):
    """Retrieval stages that call a completion model"""
    QUERY_EXPANSION = "query_expansion"
    CONTEXT_COMPRESSION = "context_compression"


@dataclass
class PromptTemplate:
    """
    Prompt template for a completion call

    Attributes:
        template: Prompt string with ``str.format`` placeholders
        system_message: System message for chat models
        max_tokens: Maximum tokens for the completion
        temperature: Sampling temperature
    """
    template: str
    system_message: str
    max_tokens: int = 256
    temperature: float = 0.3

    def format(self, **kwargs) -> str:
        return self.template.format(**kwargs)

    def to_messages(self, **kwargs) -> List[Dict[str, str]]:
        """Format as chat messages for chat-based models"""
        return [
            {"role": "system", "content": self.system_message},
            {"role": "user", "content": self.format(**kwargs)}
        ]


class PromptTemplateLibrary:
    """Library of retrieval prompts"""

    SYSTEM_SEARCH = """You help a search engine find passages in a document collection.
You never answer the user's question yourself; you only produce text the search engine can use."""

    QUERY_EXPANSION_TEMPLATE = PromptTemplate(
        template="""Write {n} alternative phrasings of the search query below.

Query: {query}

Instructions:
- Each phrasing must keep the original meaning
- Make the phrasings distinct from each other and from the original
- Prefer different vocabulary (synonyms, expanded acronyms, related terms)
- Output one phrasing per line with no numbering and no extra commentary

Phrasings:""",
        system_message=SYSTEM_SEARCH,
        max_tokens=256,
        temperature=0.7
    )

    CONTEXT_COMPRESSION_TEMPLATE = PromptTemplate(
        template="""Extract the part of the passage that is relevant to the query.

Query: {query}

Passage:
{passage}

Instructions:
- Copy the relevant sentences verbatim; do not paraphrase or summarize
- Keep every sentence needed to answer the query
- If nothing in the passage is relevant, output exactly {marker}

Relevant text:""",
        system_message=SYSTEM_SEARCH,
        max_tokens=512,
        temperature=0.0
    )

    @classmethod
    def get_template(cls, prompt_type: PromptType) -> PromptTemplate:
        templates = {
            PromptType.QUERY_EXPANSION: cls.QUERY_EXPANSION_TEMPLATE,
            PromptType.CONTEXT_COMPRESSION: cls.CONTEXT_COMPRESSION_TEMPLATE,
        }
        return templates[prompt_type]
