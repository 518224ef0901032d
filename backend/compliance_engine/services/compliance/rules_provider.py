"""
Rules Provider

Maps (entity type, jurisdiction) to obligation templates.

The lookup result is a tagged variant: SupportedRules or
UnsupportedJurisdiction. Callers never rely on a missing dict key.
The built-in table is data, not legal advice - deployments can plug in any
provider implementing `lookup`.
"""
from typing import Dict, FrozenSet, List, Optional, Tuple

from ...models.db_models import EventPriority, IntervalUnit
from ...models.engine_models import (
    ObligationTemplate, Recurrence, RuleLookup, SupportedRules, UnsupportedJurisdiction,
)


class RulesProviderError(Exception):
    """Raised when a rules backend cannot be reached or returns garbage."""
    pass


class RulesProvider:
    """Interface for obligation rule sources."""

    def lookup(self, entity_type: str, jurisdiction: str) -> RuleLookup:
        raise NotImplementedError

    def get_obligations(self, entity_type: str, jurisdiction: str) -> List[ObligationTemplate]:
        """Templates for the pair, or an empty list when unsupported."""
        result = self.lookup(entity_type, jurisdiction)
        if isinstance(result, SupportedRules):
            return list(result.templates)
        return []


# =============================================================================
# BUILT-IN RULE TABLE
# =============================================================================

ANNUAL = Recurrence(IntervalUnit.YEAR, 1)
BIENNIAL = Recurrence(IntervalUnit.YEAR, 2)
QUARTERLY = Recurrence(IntervalUnit.QUARTER, 1)

CORPORATE_TYPES = frozenset({"LLC", "Corporation", "S-Corp", "C-Corp", "Professional Corporation"})

# Each row: (template, entity types it applies to, jurisdictions it applies to or None for all)
RULE_TABLE: List[Tuple[ObligationTemplate, FrozenSet[str], Optional[FrozenSet[str]]]] = [
    # Federal requirements
    (
        ObligationTemplate(
            event_type="tax_filing",
            title="Annual Income Tax Return Filing",
            description="File federal income tax return for your business entity.",
            recurrence=ANNUAL,
            anchor_offset_days=365,
            priority=EventPriority.HIGH,
            category="tax",
        ),
        CORPORATE_TYPES,
        None,
    ),
    (
        ObligationTemplate(
            event_type="quarterly_taxes",
            title="Quarterly Estimated Tax Payment",
            description="Submit quarterly estimated tax payments to the IRS.",
            recurrence=QUARTERLY,
            anchor_offset_days=90,
            priority=EventPriority.HIGH,
            category="tax",
        ),
        CORPORATE_TYPES,
        None,
    ),
    (
        ObligationTemplate(
            event_type="ownership_disclosure",
            title="Beneficial Ownership Information Report",
            description="File the beneficial ownership report with FinCEN.",
            recurrence=None,
            anchor_offset_days=90,
            priority=EventPriority.HIGH,
            category="compliance",
        ),
        CORPORATE_TYPES,
        None,
    ),
    (
        ObligationTemplate(
            event_type="business_license_renewal",
            title="Business License Renewal",
            description="Renew business license with local authorities.",
            recurrence=ANNUAL,
            anchor_offset_days=365,
            priority=EventPriority.MEDIUM,
            category="licensing",
        ),
        CORPORATE_TYPES,
        None,
    ),
    (
        ObligationTemplate(
            event_type="agent_renewal",
            title="Registered Agent Renewal",
            description="Verify your registered agent information is current and renew the service.",
            recurrence=ANNUAL,
            anchor_offset_days=365,
            priority=EventPriority.MEDIUM,
            category="compliance",
        ),
        CORPORATE_TYPES,
        None,
    ),
    # State requirements
    (
        ObligationTemplate(
            event_type="annual_report",
            title="Annual Report Filing",
            description="File annual report with the Secretary of State.",
            recurrence=ANNUAL,
            anchor_offset_days=365,
            priority=EventPriority.HIGH,
            category="state_filing",
        ),
        CORPORATE_TYPES,
        frozenset({"CA", "NY", "TX", "FL", "IL", "PA", "OH", "GA", "NC", "MI", "DE"}),
    ),
    (
        ObligationTemplate(
            event_type="franchise_tax",
            title="Franchise Tax Payment",
            description="Pay state franchise tax to maintain good standing.",
            recurrence=ANNUAL,
            anchor_offset_days=365,
            priority=EventPriority.HIGH,
            category="tax",
        ),
        CORPORATE_TYPES,
        frozenset({"CA", "TX", "DE", "NY"}),
    ),
    (
        ObligationTemplate(
            event_type="ca_llc_fee",
            title="California LLC Annual Fee",
            description="Pay California LLC annual fee to the Franchise Tax Board.",
            recurrence=ANNUAL,
            anchor_offset_days=105,
            priority=EventPriority.HIGH,
            category="tax",
        ),
        frozenset({"LLC"}),
        frozenset({"CA"}),
    ),
    (
        ObligationTemplate(
            event_type="ca_statement_of_information",
            title="California Statement of Information",
            description="File Statement of Information with the California Secretary of State.",
            recurrence=BIENNIAL,
            anchor_offset_days=90,
            priority=EventPriority.HIGH,
            category="state_filing",
        ),
        frozenset({"LLC", "Corporation"}),
        frozenset({"CA"}),
    ),
]

SUPPORTED_JURISDICTIONS = frozenset({
    "AL", "AK", "AZ", "AR", "CA", "CO", "CT", "DE", "DC", "FL", "GA", "HI", "ID", "IL",
    "IN", "IA", "KS", "KY", "LA", "ME", "MD", "MA", "MI", "MN", "MS", "MO", "MT", "NE",
    "NV", "NH", "NJ", "NM", "NY", "NC", "ND", "OH", "OK", "OR", "PA", "RI", "SC", "SD",
    "TN", "TX", "UT", "VT", "VA", "WA", "WV", "WI", "WY",
})


class StaticRulesProvider(RulesProvider):
    """
    Rules provider backed by an in-process table.

    Usage:
        provider = StaticRulesProvider()
        result = provider.lookup("LLC", "CA")
    """

    def __init__(
        self,
        table: Optional[List[Tuple[ObligationTemplate, FrozenSet[str], Optional[FrozenSet[str]]]]] = None,
        jurisdictions: Optional[FrozenSet[str]] = None,
    ):
        self.table = table if table is not None else RULE_TABLE
        self.jurisdictions = jurisdictions if jurisdictions is not None else SUPPORTED_JURISDICTIONS
        self.entity_types = frozenset(t for _, types, _ in self.table for t in types)

    def lookup(self, entity_type: str, jurisdiction: str) -> RuleLookup:
        state = (jurisdiction or "").upper()

        if state not in self.jurisdictions:
            return UnsupportedJurisdiction(
                entity_type=entity_type,
                jurisdiction=state,
                reason=f"Jurisdiction '{state}' is not supported",
            )
        if entity_type not in self.entity_types:
            return UnsupportedJurisdiction(
                entity_type=entity_type,
                jurisdiction=state,
                reason=f"Entity type '{entity_type}' has no rules",
            )

        templates = [
            template
            for template, types, states in self.table
            if entity_type in types and (states is None or state in states)
        ]
        return SupportedRules(templates=templates)


class MappingRulesProvider(RulesProvider):
    """Rules provider over an explicit {(entity_type, jurisdiction): templates} mapping."""

    def __init__(self, rules: Dict[Tuple[str, str], List[ObligationTemplate]]):
        self.rules = rules

    def lookup(self, entity_type: str, jurisdiction: str) -> RuleLookup:
        templates = self.rules.get((entity_type, jurisdiction))
        if not templates:
            return UnsupportedJurisdiction(
                entity_type=entity_type,
                jurisdiction=jurisdiction,
                reason="No rules registered for this pair",
            )
        return SupportedRules(templates=list(templates))
