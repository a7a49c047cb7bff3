"""Proof Gate orchestrator.

Runs the check steps strictly in order against one shared pack, then
composes, validates and finalizes it. Steps are never run concurrently: the
contradiction detector reads what the filesystem check wrote, and every step
mutates the same pack.

Abort policy lives here and nowhere else. A FAIL from a step listed in
`ABORTING_STEPS` records its recurring issue, saves the counters and raises
`ProofGateAborted`. An unexpected exception from any step is recorded and
converted to FAIL; the sequence then continues (or aborts, if the step is an
aborting one).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, FrozenSet, List, Optional, Sequence, Tuple

from . import metrics
from .auth import RoleContext
from .backend import FunctionsClient, HttpBackendClient, LocalRpcClient, RpcClient
from .composer import ComposedPack, compose_evidence_pack
from .config import GateConfig
from .errors import ProofGateAborted
from .evidence_pack import EvidencePack, ValidationResult
from .fs_reality import load_stored_fs_reality_check, store_fs_reality_check
from .issue_counts import RecurringIssueCounts
from .ops_stats import OPS_STATS
from .qa import QAHarness
from .recorder import RecorderContext, StepOutcome, StepRecord, StepStatus, run_with_proof, summarize_runs
from .signing import ProofSigner, build_proof_signer
from .state import KEY_LAST_PACK, JsonFileStateStore, StateStore
from .steps import STEP_ORDER, RunState
from .store import PlatformStore
from .validator import validate_evidence_pack

logger = logging.getLogger("proof_gate.orchestrator")

StepFn = Callable[[RunState], Awaitable[StepOutcome]]

ABORTING_STEPS: FrozenSet[str] = frozenset({"contradiction_detector"})
ABORT_ISSUE_CODES: Dict[str, str] = {"contradiction_detector": "proof_contradiction"}
DEFAULT_ROUTE = "/platform/proof-gate"
TENANT_SAMPLE_SIZE = 5


@dataclass
class ProofGateRun:
    pack: EvidencePack
    records: List[StepRecord]
    composed: ComposedPack
    validation: ValidationResult

    @property
    def ok(self) -> bool:
        return self.validation.ok


class ProofGate:
    def __init__(
        self,
        config: GateConfig,
        state: StateStore,
        *,
        store: Optional[PlatformStore] = None,
        rpc: Optional[RpcClient] = None,
        functions: Optional[FunctionsClient] = None,
        signer: Optional[ProofSigner] = None,
        qa_harness: Optional[QAHarness] = None,
        steps: Sequence[Tuple[str, StepFn]] = STEP_ORDER,
        aborting_steps: FrozenSet[str] = ABORTING_STEPS,
    ):
        self.config = config
        self.state = state
        self.store = store
        self.rpc = rpc if rpc is not None else (LocalRpcClient.for_store(store) if store is not None else None)
        self.functions = functions
        self.signer = signer
        self.qa_harness = qa_harness
        self.steps = tuple(steps)
        self.aborting_steps = frozenset(aborting_steps)

    @classmethod
    def from_config(cls, config: GateConfig, *, store: Optional[PlatformStore] = None) -> "ProofGate":
        """Wire the gate from configuration.

        With a backend URL, RPC and functions go over HTTP; otherwise the
        dependency check runs against the local store and function steps skip.
        """
        state = JsonFileStateStore(config.state_dir)
        rpc: Optional[RpcClient] = None
        functions: Optional[FunctionsClient] = None
        if config.backend_configured:
            client = HttpBackendClient.from_config(config)
            rpc, functions = client, client
        return cls(
            config,
            state,
            store=store,
            rpc=rpc,
            functions=functions,
            signer=build_proof_signer(config),
            qa_harness=QAHarness(store, functions) if store is not None else None,
        )

    def _tenant_sample(self) -> List[str]:
        if self.store is None:
            return []
        return self.store.list_tenant_ids(limit=TENANT_SAMPLE_SIZE)

    async def _run_step(self, ctx: RecorderContext, step_id: str, fn: StepFn, run: RunState) -> StepOutcome:
        try:
            return await run_with_proof(ctx, step_id, lambda: fn(run))
        except Exception as e:
            logger.error("step %s raised: %s", step_id, e)
            return StepOutcome.failed(f"{type(e).__name__}: {e}")

    async def run(self, role: RoleContext, current_route: str = DEFAULT_ROUTE) -> ProofGateRun:
        from . import __version__

        counts = RecurringIssueCounts(self.state)
        counts.load()
        pack = EvidencePack.create(
            role,
            current_route,
            app_version=self.config.app_version or __version__,
            build_timestamp=self.config.build_timestamp,
            tenant_ids=self._tenant_sample(),
        )
        run = RunState(
            pack=pack,
            role=role,
            config=self.config,
            state=self.state,
            counts=counts,
            rpc=self.rpc,
            functions=self.functions,
            qa_harness=self.qa_harness,
            previous_fs=load_stored_fs_reality_check(self.state),
        )
        ctx = RecorderContext()

        try:
            for step_id, fn in self.steps:
                outcome = await self._run_step(ctx, step_id, fn, run)
                metrics.record_step_outcome(step_id, outcome.status.value)
                if outcome.status is StepStatus.FAIL and step_id in self.aborting_steps:
                    counts.increment(ABORT_ISSUE_CODES.get(step_id, f"{step_id}_abort"))
                    pack.recurring_issue_counts = counts.snapshot()
                    pack.runs = summarize_runs(ctx.records)
                    logger.error("proof gate aborted at %s: %s", step_id, outcome.reason)
                    metrics.record_proof_run("aborted")
                    OPS_STATS.record_proof_run("aborted")
                    raise ProofGateAborted(step_id, outcome.reason, pack=pack, records=ctx.records)
                if outcome.status is StepStatus.FAIL:
                    logger.info("step %s failed: %s", step_id, outcome.reason)
        finally:
            counts.save()

        pack.recurring_issue_counts = counts.snapshot()
        composed = await compose_evidence_pack(pack, ctx.records, self.signer)
        if composed.is_signed:
            OPS_STATS.record_signature()
        elif self.signer is not None:
            OPS_STATS.record_signer_unavailable()

        validation = validate_evidence_pack(pack)
        pack.finalize(validation)

        self.state.set(KEY_LAST_PACK, pack.to_dict())
        if run.fs_result is not None:
            store_fs_reality_check(self.state, run.fs_result)

        verdict = "pass" if validation.ok else "fail"
        metrics.record_proof_run(verdict)
        OPS_STATS.record_proof_run(verdict)
        logger.info(
            "proof gate %s token=%s errors=%d warnings=%d",
            verdict.upper(), composed.proof_token, len(validation.errors), len(validation.warnings),
        )
        return ProofGateRun(pack=pack, records=list(ctx.records), composed=composed, validation=validation)
