"""
Cross-Encoder Scoring Service
Scores (query, passage) pairs jointly with a sequence-classification model
"""
import asyncio
from abc import ABC, abstractmethod
from typing import List, Dict, Any, Optional, Tuple
import logging

logger = logging.getLogger(__name__)


class RerankingService(ABC):
    """External cross-encoder: scores are comparable only within one call"""

    @abstractmethod
    async def score(self, query: str, passages: List[Tuple[str, str]]) -> List[Tuple[str, float]]:
        """
        Score passages against the query

        Args:
            query: Query text
            passages: (id, text) pairs

        Returns:
            (id, score) pairs, one per input passage
        """


class CrossEncoderScorer(RerankingService):
    """
    Local Hugging Face cross-encoder

    Query and passage are encoded together, so the model sees both when
    judging relevance. Inference runs in a worker thread.
    """

    def __init__(
        self,
        model_name: str = "cross-encoder/ms-marco-MiniLM-L-6-v2",
        max_length: int = 512,
        batch_size: int = 8,
        device: Optional[str] = None,
        use_fp16: bool = True
    ):
        import torch
        from transformers import AutoTokenizer, AutoModelForSequenceClassification

        self._torch = torch
        self.model_name = model_name
        self.max_length = max_length
        self.batch_size = batch_size
        self.device = device or ("cuda" if torch.cuda.is_available() else "cpu")

        try:
            self.tokenizer = AutoTokenizer.from_pretrained(model_name)
            self.model = AutoModelForSequenceClassification.from_pretrained(model_name)
            self.model.to(self.device)
            if use_fp16 and torch.cuda.is_available():
                self.model = self.model.half()
            self.model.eval()
            logger.info(f"Loaded cross-encoder: {model_name} on {self.device}")
        except Exception as e:
            logger.error(f"Failed to load cross-encoder {model_name}: {e}")
            raise

    async def score(self, query: str, passages: List[Tuple[str, str]]) -> List[Tuple[str, float]]:
        if not passages:
            return []

        results: List[Tuple[str, float]] = []
        for i in range(0, len(passages), self.batch_size):
            batch = passages[i:i + self.batch_size]
            scores = await asyncio.to_thread(self._score_batch, query, [text for _, text in batch])
            results.extend(zip((pid for pid, _ in batch), scores))
        return results

    def _score_batch(self, query: str, texts: List[str]) -> List[float]:
        torch = self._torch
        inputs = self.tokenizer(
            [query] * len(texts),
            texts,
            return_tensors="pt",
            max_length=self.max_length,
            truncation="only_second",
            padding=True
        )
        inputs = {k: v.to(self.device) for k, v in inputs.items()}

        with torch.no_grad():
            logits = self.model(**inputs).logits  # [batch, num_labels]

        if logits.size(-1) == 1:
            scores = logits.squeeze(-1)
        else:
            # last class is "relevant"
            scores = torch.softmax(logits, dim=-1)[:, -1]
        return scores.float().cpu().tolist()

    async def health_check(self) -> bool:
        """Model and tokenizer are loaded"""
        return self.model is not None and self.tokenizer is not None

    def get_model_info(self) -> Dict[str, Any]:
        return {
            "model_name": self.model_name,
            "max_length": self.max_length,
            "batch_size": self.batch_size,
            "device": self.device,
        }
