"""Human approval gate for effectful tool calls.

The gate wraps an ``ApprovalPresenter`` and is the single path by which an
approval decision is obtained, on the client side (as the MCP elicitation
callback) and on the provider side (around command execution).
"""

import logging
from typing import Any, Callable, Dict, List, Optional

from mcp import types

from dab.lib.logging_config import get_audit_logger
from dab.lib.metrics import try_get_metrics_collector
from dab.lib.observability import get_tracer, record_failure
from dab.models.approval import (
    APPROVAL_SCHEMA,
    ApprovalDecision,
    ApprovalRequest,
    Accepted,
    Declined,
)
from dab.models.errors import ApprovalTransportError
from dab.services.interfaces.human_interface import ApprovalPresenter

ApprovalObserver = Callable[[ApprovalRequest, Optional[ApprovalDecision]], None]


class ApprovalGate:
    """Obtains human decisions through a presenter.

    Observers are called with ``(request, None)`` when a request starts and
    with ``(request, decision)`` when it ends; on transport failure the end
    notification carries ``None`` as well.
    """

    def __init__(self, presenter: ApprovalPresenter):
        self.presenter = presenter
        self.logger = logging.getLogger(__name__)
        self.audit_logger = get_audit_logger()
        self._observers: List[ApprovalObserver] = []

    def add_observer(self, observer: ApprovalObserver) -> None:
        self._observers.append(observer)

    def remove_observer(self, observer: ApprovalObserver) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    def _notify(self, request: ApprovalRequest, decision: Optional[ApprovalDecision]) -> None:
        for observer in list(self._observers):
            try:
                observer(request, decision)
            except Exception as e:
                self.logger.warning(f"Approval observer failed: {e}")

    async def request_approval(
        self,
        prompt_text: str,
        parameter_schema: Optional[Dict[str, Any]] = None
    ) -> ApprovalDecision:
        """Ask the human and wait for the decision.

        Args:
            prompt_text: Question shown to the human
            parameter_schema: Schema of the expected answer, passed through unvalidated

        Returns:
            The decision as returned by the presenter

        Raises:
            ApprovalTransportError: The decision could not be obtained
        """
        request = ApprovalRequest(
            prompt_text=prompt_text,
            parameter_schema=parameter_schema if parameter_schema is not None else APPROVAL_SCHEMA,
        )
        self.logger.info(f"Requesting approval {request.correlation_id}: {prompt_text}")
        self._notify(request, None)

        with get_tracer().start_as_current_span(
            "approval.request",
            attributes={"approval.correlation_id": request.correlation_id}
        ) as span:
            try:
                decision = await self.presenter.present_approval_prompt(
                    request.prompt_text, request.parameter_schema
                )
            except Exception as e:
                self.logger.error(f"Approval request {request.correlation_id} failed: {e}")
                span.set_attribute("approval.action", "error")
                record_failure(span, e)
                self._notify(request, None)
                raise ApprovalTransportError(str(e)) from e

            span.set_attribute("approval.action", decision.action)

        self.audit_logger.log_approval_event(
            prompt_text=request.prompt_text,
            decision=decision.action,
            approved=decision.approved,
            correlation_id=request.correlation_id
        )
        collector = try_get_metrics_collector()
        if collector:
            collector.record_approval(decision.action)

        self._notify(request, decision)
        return decision

    async def decide(
        self,
        prompt_text: str,
        parameter_schema: Optional[Dict[str, Any]] = None
    ) -> ApprovalDecision:
        """Like ``request_approval`` but any transport failure means Declined."""
        try:
            return await self.request_approval(prompt_text, parameter_schema)
        except ApprovalTransportError:
            return Declined()

    def elicitation_callback(self):
        """Adapt the gate to the MCP client elicitation hook.

        A failed approval channel answers the provider with a decline.
        """

        async def on_elicit(context, params: types.ElicitRequestParams) -> types.ElicitResult:
            schema = getattr(params, "requestedSchema", None) or {}
            decision = await self.decide(params.message, schema)
            if isinstance(decision, Accepted):
                return types.ElicitResult(action="accept", content=decision.data)
            return types.ElicitResult(action=decision.action)

        return on_elicit
