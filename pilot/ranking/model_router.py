"""Model routing — pick the model chain for a generation strategy and walk it."""

from __future__ import annotations

import logging
from typing import Any, Optional

from pilot.common.cost import CostLedger
from pilot.common.llm_client import LLMClient
from pilot.common.protocol import GenerationStrategy
from pilot.ranking.ranker import MODEL_POLICY, RankingPolicy, rank_models
from stores.rankings import ModelPerformanceStore

logger = logging.getLogger(__name__)


class ModelRouter:
    def __init__(
        self,
        llm: LLMClient,
        chains: dict[str, list[str]],
        performance: Optional[ModelPerformanceStore] = None,
        policy: RankingPolicy = MODEL_POLICY,
    ):
        self.llm = llm
        self.chains = chains
        self.performance = performance
        self.policy = policy

    def chain_for(self, strategy: GenerationStrategy, owner_id: str = "", task_type: str = "",
                  domain: str = "") -> list[str]:
        base = list(self.chains.get(strategy.value) or self.chains.get("standard") or [])
        if not self.performance or not owner_id:
            return base
        stats = self.performance.stats(owner_id, task_type, domain)
        return rank_models(base, stats, self.policy)

    async def generate_json(
        self,
        *,
        prompt: str,
        system: str,
        strategy: GenerationStrategy,
        owner_id: str = "",
        task_type: str = "",
        domain: str = "",
        ledger: Optional[CostLedger] = None,
        temperature: float = 0.3,
        max_tokens: int = 4096,
    ) -> dict[str, Any]:
        """Try each model in ranked order until one returns parseable JSON."""
        last: dict[str, Any] = {"error": True, "message": "No models configured", "content": ""}
        for model in self.chain_for(strategy, owner_id, task_type, domain):
            result = await self.llm.generate_json(
                prompt=prompt, system=system, model=model,
                temperature=temperature, max_tokens=max_tokens,
            )
            cost = float(result.get("cost", 0.0) or 0.0)
            if ledger is not None:
                ledger.add(cost, f"llm:{model}")
            ok = not result.get("error")
            self._record(owner_id, task_type, domain, model, ok, cost, result.get("latency_ms", 0))
            if ok:
                result["model"] = model
                return result
            logger.warning(f"Model {model} failed ({result.get('message')}), trying next in chain")
            last = result
        return last

    def _record(self, owner_id: str, task_type: str, domain: str, model: str,
                ok: bool, cost: float, latency_ms: int) -> None:
        if not self.performance or not owner_id:
            return
        try:
            self.performance.record(owner_id, task_type, model, ok, cost, latency_ms, domain=domain)
        except Exception as e:
            logger.debug(f"Model performance record failed (non-fatal): {e}")
