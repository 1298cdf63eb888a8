"""
Text Embedder
Single-vector sentence embeddings for the semantic retriever and on-demand MMR scoring
"""
import asyncio
from abc import ABC, abstractmethod
from typing import List, Dict, Any, Optional
import logging

logger = logging.getLogger(__name__)


class BaseEmbedder(ABC):
    """Interface for anything that turns text into vectors"""

    @abstractmethod
    async def embed_query(self, text: str) -> List[float]:
        """Embed a single query text"""

    @abstractmethod
    async def embed_documents(self, texts: List[str]) -> List[List[float]]:
        """Embed candidate texts, one vector per input in the same order"""


class TransformerEmbedder(BaseEmbedder):
    """
    Hugging Face encoder with mean pooling

    Vectors are L2-normalised, so dot product equals cosine similarity.
    Model inference runs in a worker thread to keep the event loop free.
    """

    def __init__(
        self,
        model_name: str = "sentence-transformers/all-MiniLM-L6-v2",
        max_length: int = 512,
        batch_size: int = 16,
        device: Optional[str] = None
    ):
        import torch
        from transformers import AutoTokenizer, AutoModel

        self._torch = torch
        self.model_name = model_name
        self.max_length = max_length
        self.batch_size = batch_size
        self.device = device or ("cuda" if torch.cuda.is_available() else "cpu")

        try:
            self.tokenizer = AutoTokenizer.from_pretrained(self.model_name)
            self.model = AutoModel.from_pretrained(self.model_name)
            self.model.to(self.device)
            self.model.eval()
            logger.info(f"Loaded embedding model {self.model_name} on {self.device}")
        except Exception as e:
            logger.error(f"Failed to load embedding model {self.model_name}: {e}")
            raise

    async def embed_query(self, text: str) -> List[float]:
        vectors = await self.embed_documents([text.strip()])
        return vectors[0]

    async def embed_documents(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []

        results: List[List[float]] = []
        for i in range(0, len(texts), self.batch_size):
            batch = texts[i:i + self.batch_size]
            results.extend(await asyncio.to_thread(self._encode_batch, batch))
        return results

    def _encode_batch(self, texts: List[str]) -> List[List[float]]:
        torch = self._torch
        with torch.no_grad():
            inputs = self.tokenizer(
                texts,
                return_tensors="pt",
                max_length=self.max_length,
                truncation=True,
                padding=True
            )
            inputs = {k: v.to(self.device) for k, v in inputs.items()}
            outputs = self.model(**inputs)

            token_embeddings = outputs.last_hidden_state  # [batch, seq_len, dim]
            mask = inputs["attention_mask"].unsqueeze(-1).float()
            pooled = (token_embeddings * mask).sum(dim=1) / torch.clamp(mask.sum(dim=1), min=1e-9)
            pooled = torch.nn.functional.normalize(pooled, p=2, dim=1)

            return pooled.cpu().numpy().tolist()

    def get_model_info(self) -> Dict[str, Any]:
        return {
            "model_name": self.model_name,
            "max_length": self.max_length,
            "device": self.device,
        }
