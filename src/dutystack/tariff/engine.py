"""Engine facade: builds and owns every collaborator for one settings snapshot."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, List, Optional, Sequence

from dutystack.config import EngineSettings
from dutystack.errors import TariffEngineError
from dutystack.observability import log_event
from dutystack.tariff.adcvd import AdcvdOrderTable
from dutystack.tariff.comparison import OriginComparer, OriginComparison
from dutystack.tariff.hierarchy import CodeHierarchyStore
from dutystack.tariff.history import ClassificationRecord, InMemoryHistoryStore, build_history_record
from dutystack.tariff.landed_cost import LandedCostCalculator, LandedCostResult
from dutystack.tariff.layers import TariffLayerRegistry, normalize_country
from dutystack.tariff.live_rates import HttpLiveRateFetcher, LiveRateFetcher, LiveRateService
from dutystack.tariff.optimizer import DutyOptimizer, OptimizerRequest, OptimizerResult
from dutystack.tariff.oracle import ClassificationHints, HttpInferenceOracle, InferenceOracle, NullOracle
from dutystack.tariff.ranker import ClassificationRanker, ClassificationResult
from dutystack.tariff.rate_cache import InMemoryRateCache, RateCache, RedisRateCache
from dutystack.tariff.stacking import CachedTariffResolver, EffectiveTariffResult, TariffResolver

logger = logging.getLogger(__name__)


def _build_cache(settings: EngineSettings, namespace: str, **codec: Any) -> RateCache:
    if settings.cache_backend == "redis":
        from dutystack.caching import get_redis_client

        return RedisRateCache(
            get_redis_client(settings.redis_url),
            settings.cache_ttl_seconds,
            namespace=f"dutystack:{namespace}",
            **codec,
        )
    return InMemoryRateCache(settings.cache_ttl_seconds)


@dataclass
class TariffEngine:
    settings: EngineSettings
    hierarchy: CodeHierarchyStore
    registry: TariffLayerRegistry
    resolver: CachedTariffResolver
    live_cache: RateCache
    calculator: LandedCostCalculator
    ranker: ClassificationRanker
    optimizer: DutyOptimizer
    history: InMemoryHistoryStore
    comparer: OriginComparer
    adcvd_orders: AdcvdOrderTable

    @property
    def resolve_cache(self) -> RateCache:
        return self.resolver.cache

    # -- operations ----------------------------------------------------------

    def resolve(self, code: str, country: str, as_of: Optional[date] = None) -> EffectiveTariffResult:
        return self.resolver.resolve(code, country, as_of)

    def landed_cost(
        self,
        code: str,
        country: str,
        product_value: float,
        quantity: float,
        *,
        shipping: float = 0.0,
        insurance: float = 0.0,
        is_ocean: bool = True,
        as_of: Optional[date] = None,
    ) -> LandedCostResult:
        return self.calculator.calculate(
            code, country, product_value, quantity, shipping, insurance, is_ocean, as_of
        )

    def classify(
        self,
        description: str,
        hints: Optional[ClassificationHints] = None,
        *,
        as_of: Optional[date] = None,
        record: bool = True,
    ) -> ClassificationResult:
        """Rank codes and, when the origin is known, attach a duty estimate to each."""
        hints = hints or ClassificationHints()
        if hints.country_of_origin:
            hints = ClassificationHints(
                material=hints.material,
                intended_use=hints.intended_use,
                country_of_origin=normalize_country(hints.country_of_origin),
                unit_value=hints.unit_value,
                dimensions_known=hints.dimensions_known,
            )
        result = self.ranker.classify(description, hints)
        if hints.country_of_origin and result.primary is not None:
            result = self._with_duties(result, hints.country_of_origin, as_of)
        if record:
            self.history.add(build_history_record(result, description, hints.country_of_origin))
        return result

    def _with_duties(self, result: ClassificationResult, country: str, as_of: Optional[date]) -> ClassificationResult:
        def attach(candidate):
            try:
                return candidate.with_duty(self.resolver.resolve(candidate.code, country, as_of))
            except TariffEngineError as exc:
                log_event(
                    "classify.duty_unavailable",
                    level=logging.WARNING,
                    code=candidate.code,
                    error=exc.kind,
                    reason=exc.message,
                )
                return candidate

        return ClassificationResult(
            description=result.description,
            primary=attach(result.primary),
            alternatives=tuple(attach(candidate) for candidate in result.alternatives),
            needs_clarification=result.needs_clarification,
            questions=result.questions,
            conditional=result.conditional,
            detected_material=result.detected_material,
            flags=result.flags,
            timing_ms=result.timing_ms,
            hints=result.hints,
        )

    def optimize(self, request: OptimizerRequest) -> OptimizerResult:
        return self.optimizer.optimize(request)

    def compare_origins(
        self,
        code: str,
        countries: Optional[Sequence[str]] = None,
        *,
        current_origin: Optional[str] = None,
        product_value: float = 10000.0,
        quantity: float = 1.0,
        shipping: float = 0.0,
        insurance: float = 0.0,
        is_ocean: bool = True,
        as_of: Optional[date] = None,
    ) -> OriginComparison:
        """Landed cost of ``code`` from each origin, cheapest first."""
        return self.comparer.compare(
            code,
            countries,
            current_origin=current_origin,
            product_value=product_value,
            quantity=quantity,
            shipping=shipping,
            insurance=insurance,
            is_ocean=is_ocean,
            as_of=as_of,
        )

    def lookup(self, code: str) -> Dict[str, Any]:
        node = self.hierarchy.lookup(code)
        return {
            "node": node.to_dict(),
            "ancestors": [ancestor.to_dict() for ancestor in self.hierarchy.ancestors(node.code)[:-1]],
            "children": [child.to_dict() for child in self.hierarchy.children(node.code)],
        }

    def recent_history(self, limit: Optional[int] = None) -> List[ClassificationRecord]:
        return self.history.list(limit)

    # -- cache admin ---------------------------------------------------------

    def cache_status(self) -> Dict[str, Any]:
        return {
            "resolve": self.resolve_cache.status().to_dict(),
            "live": self.live_cache.status().to_dict(),
            "hierarchy_revision": self.hierarchy.revision,
            "catalog_version": self.registry.version,
            "adcvd_table_version": self.adcvd_orders.version,
        }

    def clear_caches(self) -> Dict[str, int]:
        cleared = {"resolve": self.resolve_cache.clear(), "live": self.live_cache.clear()}
        log_event("cache.cleared", **cleared)
        return cleared

    def close(self) -> None:
        self.ranker.close()


def build_engine(
    settings: Optional[EngineSettings] = None,
    *,
    oracle: Optional[InferenceOracle] = None,
    live_fetcher: Optional[LiveRateFetcher] = None,
    cache: Optional[RateCache] = None,
    live_cache: Optional[RateCache] = None,
) -> TariffEngine:
    """Wire an engine from ``settings``; explicit collaborators win over settings."""
    settings = settings or EngineSettings.from_env()

    hierarchy = CodeHierarchyStore.load_seed(settings.hierarchy_seed_path)
    live_cache = live_cache or _build_cache(settings, "live")
    if live_fetcher is None and settings.live_rates_url:
        live_fetcher = HttpLiveRateFetcher(settings.live_rates_url, timeout=settings.live_rates_timeout_seconds)
    live_service = LiveRateService(live_fetcher, live_cache) if live_fetcher is not None else None
    registry = TariffLayerRegistry.load_catalog(settings.layer_catalog_path, live_rates=live_service)
    adcvd_orders = AdcvdOrderTable.load(settings.adcvd_orders_path)

    resolve_cache = cache or _build_cache(
        settings,
        "resolve",
        encode=lambda result: result.to_dict(),
        decode=EffectiveTariffResult.from_dict,
    )
    resolver = CachedTariffResolver(TariffResolver(hierarchy, registry, adcvd_orders), resolve_cache)
    calculator = LandedCostCalculator(resolver)

    if oracle is None:
        oracle = (
            HttpInferenceOracle(settings.oracle_url, timeout=settings.oracle_timeout_seconds)
            if settings.oracle_url
            else NullOracle()
        )
    ranker = ClassificationRanker(
        hierarchy,
        oracle,
        confidence_threshold=settings.confidence_threshold,
        max_questions=settings.max_questions,
        oracle_timeout=settings.oracle_timeout_seconds,
    )
    optimizer = DutyOptimizer(
        ranker,
        calculator,
        workers=settings.optimizer_workers,
        timeout=settings.optimizer_timeout_seconds,
    )

    logger.info(
        "Tariff engine ready: hierarchy %s (%d nodes), catalog %s (%d layers), cache=%s, oracle=%s, live=%s",
        hierarchy.revision,
        len(hierarchy),
        registry.version,
        len(registry.layers),
        settings.cache_backend,
        oracle.name,
        live_service is not None,
    )
    return TariffEngine(
        settings=settings,
        hierarchy=hierarchy,
        registry=registry,
        resolver=resolver,
        live_cache=live_cache,
        calculator=calculator,
        ranker=ranker,
        optimizer=optimizer,
        history=InMemoryHistoryStore(settings.history_max_items),
        comparer=OriginComparer(calculator),
        adcvd_orders=adcvd_orders,
    )
