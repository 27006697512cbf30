import asyncio
import logging
import time
from typing import Callable, Dict, List, NamedTuple, Optional

from ..exceptions import RuleConfigurationError
from ..rules.base import DetectionRule, RuleEvaluationResult
from ..rules.config import ThreatRulesConfig, load_threat_rules_config
from ..rules.factory import build_rules
from ..schemas.event import EventContext
from ..service_manager.base_service import BaseService
from ..utils import utcnow

logger = logging.getLogger("n7-threat.rule-engine")


class RuleExecutionStats:
    """Per-rule execution counters."""

    def __init__(self):
        self.executions = 0
        self.matches = 0
        self.timeouts = 0
        self.errors = 0
        self.last_execution = None
        self.total_execution_time_ms = 0.0

    @property
    def average_execution_time_ms(self) -> float:
        if self.executions == 0:
            return 0.0
        return self.total_execution_time_ms / self.executions

    def as_dict(self) -> Dict:
        return {
            "executions": self.executions,
            "matches": self.matches,
            "timeouts": self.timeouts,
            "errors": self.errors,
            "last_execution": self.last_execution.isoformat() if self.last_execution else None,
            "average_execution_time_ms": round(self.average_execution_time_ms, 3),
        }


class _Snapshot(NamedTuple):
    config: ThreatRulesConfig
    rules: Dict[str, DetectionRule]


class RuleEngineService(BaseService):
    """
    Rule Engine Service.
    Responsibility: Run every ACTIVE detection rule against an event context
    under a per-rule time budget and return the matching results.

    Configuration and rules live in one immutable snapshot. reload() and
    rule (un)registration build a new snapshot and swap it in a single
    assignment, so an evaluation in flight keeps the snapshot it started with.
    """

    def __init__(
            self,
            config: Optional[ThreatRulesConfig] = None,
            config_loader: Callable[[], ThreatRulesConfig] = load_threat_rules_config,
    ):
        super().__init__("RuleEngineService")
        self._config_loader = config_loader
        self._custom_rules: Dict[str, DetectionRule] = {}
        self._stats: Dict[str, RuleExecutionStats] = {}
        self._running = False
        self._reload_task: Optional[asyncio.Task] = None

        config = config or config_loader()
        self._snapshot = _Snapshot(config, self._index(build_rules(config)))
        logger.info(f"Loaded {len(self._snapshot.rules)} detection rules")

    @property
    def config(self) -> ThreatRulesConfig:
        return self._snapshot.config

    async def start(self):
        self._running = True
        hot_reload = self.config.hot_reload
        if hot_reload.enabled:
            self._reload_task = asyncio.create_task(self._hot_reload_loop())
            logger.info(f"Hot reload enabled (every {hot_reload.interval_ms} ms)")
        logger.info("RuleEngineService started.")

    async def stop(self):
        self._running = False
        if self._reload_task:
            self._reload_task.cancel()
            try:
                await self._reload_task
            except asyncio.CancelledError:
                pass
            self._reload_task = None
        logger.info("RuleEngineService stopped.")

    # -- rule management ---------------------------------------------------

    def _index(self, rules: List[DetectionRule]) -> Dict[str, DetectionRule]:
        indexed = {rule.id: rule for rule in rules}
        indexed.update(self._custom_rules)
        return indexed

    def reload(self) -> ThreatRulesConfig:
        """Rebuild all rules from a fresh configuration snapshot."""
        config = self._config_loader()
        self._snapshot = _Snapshot(config, self._index(build_rules(config)))
        logger.info(f"Reloaded threat rule configuration ({len(self._snapshot.rules)} rules)")
        return config

    async def _hot_reload_loop(self):
        while self._running:
            await asyncio.sleep(self.config.hot_reload.interval_ms / 1000)
            try:
                self.reload()
            except Exception as e:
                logger.error(f"Hot reload failed, keeping previous rules: {e}", exc_info=True)

    def register_rule(self, rule: DetectionRule):
        if not rule.validate():
            raise RuleConfigurationError(rule.id)
        self._custom_rules[rule.id] = rule
        rules = dict(self._snapshot.rules)
        rules[rule.id] = rule
        self._snapshot = _Snapshot(self._snapshot.config, rules)
        logger.info(f"Registered rule: {rule.id}")

    def unregister_rule(self, rule_id: str) -> bool:
        if rule_id not in self._snapshot.rules:
            return False
        self._custom_rules.pop(rule_id, None)
        rules = {k: v for k, v in self._snapshot.rules.items() if k != rule_id}
        self._snapshot = _Snapshot(self._snapshot.config, rules)
        logger.info(f"Unregistered rule: {rule_id}")
        return True

    def get_rule(self, rule_id: str) -> Optional[DetectionRule]:
        return self._snapshot.rules.get(rule_id)

    def get_all_rules(self) -> List[DetectionRule]:
        return list(self._snapshot.rules.values())

    # -- evaluation ----------------------------------------------------------

    async def evaluate(self, context: EventContext) -> List[RuleEvaluationResult]:
        """
        Returns the matching results in rule registration order. Parallel and
        sequential execution yield the same list for the same input.
        """
        snapshot = self._snapshot
        engine = snapshot.config.engine
        if not engine.enabled:
            return []

        active = [rule for rule in snapshot.rules.values() if rule.is_active]
        timeout = engine.max_execution_time / 1000

        if engine.parallel_execution:
            results = await asyncio.gather(*(self._run_rule(rule, context, timeout) for rule in active))
        else:
            results = []
            for rule in active:
                results.append(await self._run_rule(rule, context, timeout))

        matches = [result for result in results if result is not None and result.matched]

        if engine.log_detailed_metrics:
            logger.debug(
                f"Evaluated {len(active)} rules for {context.event_type.value}: {len(matches)} matched"
            )
        return matches

    async def _run_rule(
            self, rule: DetectionRule, context: EventContext, timeout: float
    ) -> Optional[RuleEvaluationResult]:
        stats = self._stats.setdefault(rule.id, RuleExecutionStats())
        started = time.perf_counter()
        try:
            result = await asyncio.wait_for(rule.evaluate(context), timeout=timeout)
        except asyncio.TimeoutError:
            stats.timeouts += 1
            logger.error(f"Rule {rule.id} exceeded its {timeout * 1000:.0f} ms budget and was abandoned")
            return None
        except Exception as e:
            stats.errors += 1
            logger.error(f"Rule {rule.id} failed during evaluation: {e}", exc_info=True)
            return None
        finally:
            stats.executions += 1
            stats.last_execution = utcnow()
            stats.total_execution_time_ms += (time.perf_counter() - started) * 1000

        if result.matched:
            stats.matches += 1
            if result.rule_id is None:
                result = result.model_copy(update={
                    "rule_id": rule.id,
                    "rule_name": rule.name,
                    "tags": list(rule.tags),
                })
            logger.warning(f"Rule '{rule.name}' matched ({result.severity.value}): {result.reason}")
        return result

    def get_rule_stats(self, rule_id: str) -> Optional[RuleExecutionStats]:
        return self._stats.get(rule_id)

    def get_metrics(self) -> Dict:
        rules = self.get_all_rules()
        stats = list(self._stats.values())
        executions = sum(s.executions for s in stats)
        total_time = sum(s.total_execution_time_ms for s in stats)
        return {
            "enabled": self.config.engine.enabled,
            "parallel_execution": self.config.engine.parallel_execution,
            "total_rules": len(rules),
            "active_rules": len([r for r in rules if r.is_active]),
            "total_executions": executions,
            "total_matches": sum(s.matches for s in stats),
            "total_timeouts": sum(s.timeouts for s in stats),
            "total_errors": sum(s.errors for s in stats),
            "average_execution_time_ms": round(total_time / executions, 3) if executions else 0.0,
            "rules": {rule_id: s.as_dict() for rule_id, s in self._stats.items()},
        }
