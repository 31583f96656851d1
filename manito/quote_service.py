"""Quote assembly and the provider-side composition flow."""
from __future__ import annotations

import asyncio
import enum
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

from manito.distance import DistanceEstimate, DistanceResolver
from manito.errors import (
    DistanceServiceError,
    ProtocolError,
    QuoteError,
    StateTransitionError,
    SubmissionError,
    ValidationError,
)
from manito.geo import Coordinate
from manito.money import require_clp, to_decimal
from manito.pricing import (
    CustomCharge,
    LaborItem,
    MaterialItem,
    QuoteBreakdown,
    compose_breakdown,
)
from manito.tax import TaxProfile, TaxResult, apply_tax
from manito.travel_fee import TravelFeePolicy, compute_travel_fee

logger = logging.getLogger(__name__)

MAX_VISIT_NOTES_LENGTH = 300
DEFAULT_DURATION_HOURS = 2.0
VISIT_NOTES_PREFIX = "VISITA: "


class ResponseType(str, enum.Enum):
    QUOTE_NOW = "quote_now"
    VISIT_REQUIRED = "visit_required"


class ComposerState(str, enum.Enum):
    IDLE = "idle"
    EDITING = "editing"
    RESOLVING_DISTANCE = "resolving_distance"
    SUBMITTING = "submitting"
    SUBMITTED = "submitted"


@dataclass(frozen=True)
class VisitConfiguration:
    """Site visit terms for a visit-required quote. A cost of 0 is a free visit."""

    cost: Optional[int] = None
    is_deductible: Optional[bool] = None
    notes: str = ""


@dataclass(frozen=True)
class Session:
    hours: float
    label: Optional[str] = None


@dataclass(frozen=True)
class SessionStructure:
    sessions: Tuple[Session, ...]

    def to_payload(self) -> Dict[str, Any]:
        return {
            "sessions": [
                {"hours": session.hours, "label": session.label}
                for session in self.sessions
            ]
        }


@dataclass(frozen=True)
class QuotePayload:
    """Submittable quote. Totals are advisory; the backend recomputes them."""

    idempotency_token: str
    project_id: str
    provider_id: str
    acting_as_business_id: Optional[str]
    breakdown: QuoteBreakdown
    tax: TaxResult
    document_type: str
    response_type: ResponseType
    requires_onsite_confirmation: bool
    site_visit_cost_clp: Optional[int]
    site_visit_deductible: Optional[bool]
    estimated_duration_hours: float
    hours_per_session: float
    requires_multiple_visits: bool
    session_structure: Optional[SessionStructure]
    notes: Optional[str]
    preliminary_estimate: bool

    @property
    def subtotal_clp(self) -> int:
        return self.breakdown.subtotal

    @property
    def iva_amount_clp(self) -> int:
        return self.tax.iva_amount

    @property
    def total_clp(self) -> int:
        return self.tax.total_with_tax

    def to_rpc_params(self) -> Dict[str, Any]:
        """Return the parameters of the quote submission RPC."""

        return {
            "p_idempotency_token": self.idempotency_token,
            "p_project_id": self.project_id,
            "p_provider_id": self.provider_id,
            "p_acting_as_business_id": self.acting_as_business_id,
            "p_labor_items": [item.to_payload() for item in self.breakdown.labor_items],
            "p_materials_items": [item.to_payload() for item in self.breakdown.materials_items],
            "p_additional_fees": [charge.to_payload() for charge in self.breakdown.custom_charges],
            "p_travel_fee_clp": self.breakdown.travel_fee_clp,
            "p_estimated_duration_hours": self.estimated_duration_hours,
            "p_notes": self.notes,
            "p_hours_per_session": self.hours_per_session,
            "p_requires_multiple_visits": self.requires_multiple_visits,
            "p_session_structure": (
                self.session_structure.to_payload() if self.session_structure else None
            ),
            "p_response_type": self.response_type.value,
            "p_requires_onsite_confirmation": self.requires_onsite_confirmation,
            "p_site_visit_cost_clp": self.site_visit_cost_clp,
            "p_site_visit_deductible": self.site_visit_deductible,
            "p_preliminary_estimate": self.preliminary_estimate,
        }


@dataclass(frozen=True)
class SubmissionReceipt:
    quote_id: str
    version: int = 1


class QuoteSubmitter(Protocol):
    """The backend endpoint that creates quotes."""

    async def submit(self, payload: QuotePayload) -> SubmissionReceipt:  # pragma: no cover - protocol
        ...


def combine_notes(
    notes: Optional[str],
    materials_notes: Optional[str],
    visit: Optional[VisitConfiguration],
    response_type: Optional[ResponseType],
) -> Optional[str]:
    parts = [(notes or "").strip(), (materials_notes or "").strip()]
    if response_type is ResponseType.VISIT_REQUIRED and visit and visit.notes.strip():
        parts.append(f"{VISIT_NOTES_PREFIX}{visit.notes.strip()}")
    combined = "\n\n".join(part for part in parts if part)
    return combined or None


def _validate_positive_hours(value: Any, field: str) -> float:
    hours = to_decimal(value, field)
    if hours <= 0:
        raise ValidationError(field, f"must be greater than zero, got {value!r}")
    return float(hours)


class QuoteAssembler:
    """Package a breakdown and its tax into a validated :class:`QuotePayload`."""

    def assemble(
        self,
        breakdown: QuoteBreakdown,
        tax: TaxResult,
        response_type: Optional[ResponseType],
        visit: Optional[VisitConfiguration] = None,
        session: Optional[SessionStructure] = None,
        *,
        project_id: str,
        provider_id: str,
        tax_profile: TaxProfile,
        idempotency_token: str,
        estimated_duration_hours: float = DEFAULT_DURATION_HOURS,
        acting_as_business_id: Optional[str] = None,
        notes: Optional[str] = None,
        materials_notes: Optional[str] = None,
    ) -> QuotePayload:
        if not project_id:
            raise ValidationError("project_id", "is required")
        if not provider_id:
            raise ValidationError("provider_id", "is required")
        if not idempotency_token:
            raise ValidationError("idempotency_token", "is required")
        if breakdown.subtotal <= 0:
            raise ValidationError("subtotal", "must be greater than zero")
        if tax.subtotal != breakdown.subtotal:
            raise ValidationError(
                "iva_amount_clp",
                f"tax was computed for subtotal {tax.subtotal}, breakdown is {breakdown.subtotal}",
            )
        if response_type is None:
            raise ValidationError("response_type", "is required")
        response_type = ResponseType(response_type)

        site_visit_cost: Optional[int] = None
        site_visit_deductible: Optional[bool] = None
        if response_type is ResponseType.VISIT_REQUIRED:
            if visit is None or visit.cost is None:
                raise ValidationError(
                    "site_visit_cost_clp", "is required for visit-required quotes"
                )
            if visit.is_deductible is None:
                raise ValidationError(
                    "site_visit_deductible", "is required for visit-required quotes"
                )
            if len(visit.notes) > MAX_VISIT_NOTES_LENGTH:
                raise ValidationError(
                    "visit_notes", f"must be at most {MAX_VISIT_NOTES_LENGTH} characters"
                )
            site_visit_cost = require_clp(visit.cost, "site_visit_cost_clp")
            site_visit_deductible = bool(visit.is_deductible)

        total_hours = _validate_positive_hours(
            estimated_duration_hours, "estimated_duration_hours"
        )
        if session is not None:
            if not session.sessions:
                raise ValidationError("session_structure", "must contain at least one session")
            for index, item in enumerate(session.sessions):
                _validate_positive_hours(item.hours, f"session_structure.sessions[{index}].hours")
            hours_per_session = float(session.sessions[0].hours)
        else:
            hours_per_session = total_hours

        return QuotePayload(
            idempotency_token=idempotency_token,
            project_id=project_id,
            provider_id=provider_id,
            acting_as_business_id=acting_as_business_id or tax_profile.business_id,
            breakdown=breakdown,
            tax=tax,
            document_type=tax_profile.document_type.value,
            response_type=response_type,
            requires_onsite_confirmation=response_type is ResponseType.VISIT_REQUIRED,
            site_visit_cost_clp=site_visit_cost,
            site_visit_deductible=site_visit_deductible,
            estimated_duration_hours=total_hours,
            hours_per_session=hours_per_session,
            requires_multiple_visits=session is not None,
            session_structure=session,
            notes=combine_notes(notes, materials_notes, visit, response_type),
            preliminary_estimate=response_type is ResponseType.VISIT_REQUIRED,
        )


def _new_token() -> str:
    return uuid.uuid4().hex


@dataclass
class _Draft:
    labor_items: List[LaborItem] = field(default_factory=list)
    materials_items: List[MaterialItem] = field(default_factory=list)
    custom_charges: List[CustomCharge] = field(default_factory=list)


class QuoteComposer:
    """Provider-side composition flow.

    ``IDLE -> EDITING -> (RESOLVING_DISTANCE -> EDITING)* -> SUBMITTING ->
    SUBMITTED``. Every edit recomposes the breakdown and the tax. Distance
    results are applied only if they belong to the latest request token, and
    nothing is applied once the composer is closed.
    """

    def __init__(
        self,
        *,
        project_id: str,
        provider_id: str,
        provider_location: Coordinate,
        tax_profile: TaxProfile,
        policy: TravelFeePolicy,
        resolver: DistanceResolver,
        submitter: QuoteSubmitter,
        job_id: Optional[str] = None,
        assembler: Optional[QuoteAssembler] = None,
        labor_items: Sequence[LaborItem] = (),
        travel_fee_clp: int = 0,
        estimated_duration_hours: float = DEFAULT_DURATION_HOURS,
        notes: str = "",
        response_type: Optional[ResponseType] = ResponseType.QUOTE_NOW,
        token_factory: Callable[[], str] = _new_token,
    ) -> None:
        self.project_id = project_id
        self.provider_id = provider_id
        self.job_id = job_id or project_id
        self.provider_location = provider_location
        self.tax_profile = tax_profile
        self.policy = policy
        self._resolver = resolver
        self._submitter = submitter
        self._assembler = assembler or QuoteAssembler()
        self._token_factory = token_factory

        self.state = ComposerState.IDLE
        self._draft = _Draft(labor_items=list(labor_items))
        self.travel_fee_clp: Optional[int] = travel_fee_clp
        self.estimated_duration_hours = estimated_duration_hours
        self.session_structure: Optional[SessionStructure] = None
        self.notes = notes
        self.materials_notes = ""
        self.response_type = response_type
        self.visit: Optional[VisitConfiguration] = None

        self.job_location: Optional[Coordinate] = None
        self.distance_estimate: Optional[DistanceEstimate] = None
        self.distance_error: Optional[QuoteError] = None
        self.last_error: Optional[QuoteError] = None
        self.receipt: Optional[SubmissionReceipt] = None

        self.breakdown: Optional[QuoteBreakdown] = None
        self.tax: Optional[TaxResult] = None

        self._request_token = 0
        self._idempotency_token: Optional[str] = None
        # Breakdown the current idempotency token was issued for.
        self._token_breakdown: Optional[QuoteBreakdown] = None
        self._pending: set = set()
        self._closed = False

    @classmethod
    def from_suggested_quote(cls, suggestion: Mapping[str, Any], **kwargs: Any) -> "QuoteComposer":
        """Seed a composer from a backend-suggested quote."""

        try:
            calc = suggestion.get("calculation_breakdown") or {}
            labor = [
                LaborItem(
                    name=item["name"],
                    amount=item["amount"],
                    description=item.get("description"),
                )
                for item in calc.get("labor_items") or []
            ]
            travel = calc.get("travel_fee_clp") or 0
            hours = suggestion.get("estimated_duration_hours") or DEFAULT_DURATION_HOURS
            notes = suggestion.get("notes") or ""
        except (AttributeError, KeyError, TypeError) as exc:
            raise ProtocolError(f"Unexpected suggested quote shape: {exc!r}") from exc
        kwargs.setdefault("labor_items", labor)
        kwargs.setdefault("travel_fee_clp", travel)
        kwargs.setdefault("estimated_duration_hours", hours)
        kwargs.setdefault("notes", notes)
        return cls(**kwargs)

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------
    @property
    def labor_items(self) -> Tuple[LaborItem, ...]:
        return tuple(self._draft.labor_items)

    @property
    def materials_items(self) -> Tuple[MaterialItem, ...]:
        return tuple(self._draft.materials_items)

    @property
    def custom_charges(self) -> Tuple[CustomCharge, ...]:
        return tuple(self._draft.custom_charges)

    @property
    def travel_fee_pending(self) -> bool:
        return self.travel_fee_clp is None

    @property
    def display_total(self) -> Optional[int]:
        """Total with IVA, or ``None`` while the travel fee is pending."""
        if self.travel_fee_pending or self.tax is None:
            return None
        return self.tax.total_with_tax

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self) -> None:
        if self.state is not ComposerState.IDLE:
            raise StateTransitionError(f"Cannot start composing from {self.state.value}")
        self._ensure_open()
        self._recompose(self._draft, self.travel_fee_clp)
        self.state = ComposerState.EDITING

    def close(self) -> None:
        """Tear down the flow; in-flight results are discarded."""
        self._closed = True
        self._request_token += 1
        for task in list(self._pending):
            task.cancel()

    def revise(self) -> None:
        """Reopen a submitted quote; the next submission creates a new version."""
        if self.state is not ComposerState.SUBMITTED:
            raise StateTransitionError("Only a submitted quote can be revised")
        self._ensure_open()
        self.receipt = None
        self._idempotency_token = None
        self.state = ComposerState.EDITING

    def _ensure_open(self) -> None:
        if self._closed:
            raise StateTransitionError("Composer has been closed")

    def _require_editable(self) -> None:
        self._ensure_open()
        if self.state not in (ComposerState.EDITING, ComposerState.RESOLVING_DISTANCE):
            raise StateTransitionError(f"Cannot edit a quote while {self.state.value}")

    # ------------------------------------------------------------------
    # Edits
    # ------------------------------------------------------------------
    def _recompose(self, draft: _Draft, travel_fee: Optional[int]) -> None:
        breakdown = compose_breakdown(
            draft.labor_items,
            draft.materials_items,
            draft.custom_charges,
            0 if travel_fee is None else travel_fee,
        )
        tax = apply_tax(breakdown.subtotal, self.tax_profile)
        self._draft = draft
        self.breakdown = breakdown
        self.tax = tax

    def _edit(self, **changes: Any) -> None:
        self._require_editable()
        draft = _Draft(
            labor_items=list(changes.get("labor_items", self._draft.labor_items)),
            materials_items=list(changes.get("materials_items", self._draft.materials_items)),
            custom_charges=list(changes.get("custom_charges", self._draft.custom_charges)),
        )
        self._recompose(draft, self.travel_fee_clp)

    def set_labor_items(self, items: Sequence[LaborItem]) -> None:
        self._edit(labor_items=items)

    def add_labor_item(self, item: LaborItem) -> None:
        self._edit(labor_items=[*self._draft.labor_items, item])

    def set_materials_items(self, items: Sequence[MaterialItem]) -> None:
        self._edit(materials_items=items)

    def add_material_item(self, item: MaterialItem) -> None:
        self._edit(materials_items=[*self._draft.materials_items, item])

    def set_custom_charges(self, charges: Sequence[CustomCharge]) -> None:
        self._edit(custom_charges=charges)

    def add_custom_charge(self, charge: CustomCharge) -> None:
        self._edit(custom_charges=[*self._draft.custom_charges, charge])

    def remove_custom_charge(self, index: int) -> None:
        charges = list(self._draft.custom_charges)
        if not 0 <= index < len(charges):
            raise ValidationError(f"custom_charges[{index}]", "does not exist")
        del charges[index]
        self._edit(custom_charges=charges)

    def set_travel_fee(self, amount: int) -> None:
        """Set the travel fee by hand, e.g. after a degraded distance lookup."""
        self._require_editable()
        fee = require_clp(amount, "travel_fee_clp")
        self._request_token += 1
        self._recompose(self._draft, fee)
        self.travel_fee_clp = fee
        self.distance_error = None
        self.state = ComposerState.EDITING

    def set_duration(
        self, hours: float, session_structure: Optional[SessionStructure] = None
    ) -> None:
        self._require_editable()
        self.estimated_duration_hours = _validate_positive_hours(hours, "estimated_duration_hours")
        self.session_structure = session_structure
        self._idempotency_token = None

    def set_notes(self, notes: str, materials_notes: Optional[str] = None) -> None:
        self._require_editable()
        self.notes = notes
        if materials_notes is not None:
            self.materials_notes = materials_notes
        self._idempotency_token = None

    def set_response_type(
        self,
        response_type: Optional[ResponseType],
        visit: Optional[VisitConfiguration] = None,
    ) -> None:
        self._require_editable()
        self.response_type = None if response_type is None else ResponseType(response_type)
        if visit is not None:
            self.visit = visit
        self._idempotency_token = None

    def set_visit(self, visit: Optional[VisitConfiguration]) -> None:
        self._require_editable()
        self.visit = visit
        self._idempotency_token = None

    # ------------------------------------------------------------------
    # Distance resolution
    # ------------------------------------------------------------------
    async def update_job_location(self, location: Coordinate) -> Optional[DistanceEstimate]:
        """Resolve the travel fee for a new job location.

        Returns the applied estimate, the degraded fallback when the routed
        lookup failed, or ``None`` when the result was discarded because a
        newer location arrived or the composer was closed.
        """

        self._require_editable()
        self._request_token += 1
        token = self._request_token
        self.job_location = location
        self.travel_fee_clp = None
        self.distance_error = None
        self._recompose(self._draft, None)
        self.state = ComposerState.RESOLVING_DISTANCE

        task = asyncio.ensure_future(
            self._resolver.resolve(
                self.provider_location,
                location,
                self.policy,
                provider_id=self.provider_id,
                job_id=self.job_id,
                is_current=lambda: self._is_current(token),
            )
        )
        self._pending.add(task)
        try:
            estimate = await task
        except asyncio.CancelledError:
            if self._closed:
                return None
            if self._is_current(token):
                self.state = ComposerState.EDITING
            raise
        except (DistanceServiceError, ProtocolError) as exc:
            return self._fail_distance(token, exc)
        except Exception as exc:
            error = ProtocolError(f"Unexpected distance lookup failure: {exc!r}")
            error.__cause__ = exc
            return self._fail_distance(token, error)
        finally:
            self._pending.discard(task)

        if not self._is_current(token):
            logger.warning(
                "Discarding stale distance result for job %s (request %d, latest %d)",
                self.job_id,
                token,
                self._request_token,
            )
            return None

        fee = compute_travel_fee(estimate, self.policy)
        self._recompose(self._draft, fee)
        self.travel_fee_clp = fee
        self.distance_estimate = estimate
        self.state = ComposerState.EDITING
        return estimate

    def _fail_distance(self, token: int, exc: QuoteError) -> Optional[DistanceEstimate]:
        if not self._is_current(token):
            logger.warning("Discarding stale distance failure for job %s: %s", self.job_id, exc)
            return None
        fallback = getattr(exc, "fallback", None)
        logger.warning(
            "Travel fee for job %s pending after distance failure: %s", self.job_id, exc
        )
        self.distance_estimate = fallback
        self.distance_error = exc
        self.state = ComposerState.EDITING
        return fallback

    async def retry_distance(self) -> Optional[DistanceEstimate]:
        if self.job_location is None:
            raise StateTransitionError("No job location to resolve")
        return await self.update_job_location(self.job_location)

    def _is_current(self, token: int) -> bool:
        return not self._closed and token == self._request_token

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------
    def build_payload(self) -> QuotePayload:
        """Validate the draft and return the payload that would be submitted."""

        if self.travel_fee_pending:
            raise ValidationError("travel_fee_clp", "travel fee estimate pending")
        if self.breakdown is None or self.tax is None:
            raise StateTransitionError("Composition has not started")
        if self._idempotency_token is None or self.breakdown != self._token_breakdown:
            self._idempotency_token = self._token_factory()
            self._token_breakdown = self.breakdown
        return self._assembler.assemble(
            self.breakdown,
            self.tax,
            self.response_type,
            self.visit,
            self.session_structure,
            project_id=self.project_id,
            provider_id=self.provider_id,
            tax_profile=self.tax_profile,
            idempotency_token=self._idempotency_token,
            estimated_duration_hours=self.estimated_duration_hours,
            notes=self.notes,
            materials_notes=self.materials_notes,
        )

    async def submit(self) -> Optional[SubmissionReceipt]:
        """Submit the quote. Failures return the flow to editing and re-raise.

        Returns ``None`` when the composer is closed before the backend
        answers; the receipt, if any, is not applied.
        """

        self._ensure_open()
        if self.state is ComposerState.RESOLVING_DISTANCE:
            raise ValidationError("travel_fee_clp", "travel fee estimate pending")
        if self.state is not ComposerState.EDITING:
            raise StateTransitionError(f"Cannot submit a quote while {self.state.value}")

        payload = self.build_payload()
        task = asyncio.ensure_future(self._submitter.submit(payload))
        self._pending.add(task)
        self.state = ComposerState.SUBMITTING
        self.last_error = None
        try:
            receipt = await task
        except SubmissionError as exc:
            if exc.idempotency_token is None:
                exc.idempotency_token = payload.idempotency_token
            self._fail_submission(exc)
            raise
        except ProtocolError as exc:
            self._fail_submission(exc)
            raise
        except OSError as exc:
            error = SubmissionError(
                f"Network error while submitting quote: {exc}",
                idempotency_token=payload.idempotency_token,
            )
            self._fail_submission(error)
            raise error from exc
        except asyncio.CancelledError:
            if self._closed:
                logger.warning(
                    "Composer for project %s closed during submission; token %s may be retried",
                    self.project_id,
                    payload.idempotency_token,
                )
                return None
            self.state = ComposerState.EDITING
            raise
        except Exception as exc:
            error = ProtocolError(f"Unexpected submission failure: {exc!r}")
            self._fail_submission(error)
            raise error from exc
        finally:
            self._pending.discard(task)

        if self._closed:
            logger.warning(
                "Discarding submission receipt %r for project %s: composer closed",
                receipt,
                self.project_id,
            )
            return None

        if not isinstance(receipt, SubmissionReceipt) or not receipt.quote_id:
            error = ProtocolError(f"Unexpected submission response: {receipt!r}")
            self._fail_submission(error)
            raise error

        self.receipt = receipt
        self.state = ComposerState.SUBMITTED
        logger.info(
            "Submitted quote %s (version %d) for project %s",
            receipt.quote_id,
            receipt.version,
            self.project_id,
        )
        return receipt

    def _fail_submission(self, exc: QuoteError) -> None:
        logger.warning("Quote submission for project %s failed: %s", self.project_id, exc)
        self.last_error = exc
        self.state = ComposerState.EDITING


__all__ = [
    "ComposerState",
    "DEFAULT_DURATION_HOURS",
    "MAX_VISIT_NOTES_LENGTH",
    "QuoteAssembler",
    "QuoteComposer",
    "QuotePayload",
    "QuoteSubmitter",
    "ResponseType",
    "Session",
    "SessionStructure",
    "SubmissionReceipt",
    "VisitConfiguration",
    "combine_notes",
]
