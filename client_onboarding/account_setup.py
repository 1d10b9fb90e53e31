"""
Account Setup Module

Turns an approved onboarding into a provisioned investment account. Each
setup request carries an ordered list of named steps with name-based
dependencies; ``process_next_step`` keeps executing the first eligible step
until nothing else can run.

A failing step is recorded as a ``SetupError`` and the chain moves on to any
other eligible step. Only a CRITICAL error halts the chain.
"""

from datetime import datetime, timezone, timedelta
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple
from enum import Enum
import logging
import uuid

from .storage import StorageInterface, StorageRecord, KeyedLocks, to_storage_value, build_dataclass
from .audit import AuditTrail, AuditEventType
from .events import DomainEvent, EventDispatcher, EventPublisherMixin
from .step_runner import find_next_eligible, resolve_terminal_status, sort_by_order, index_by_name
from .config import get_config


logger = logging.getLogger("onboarding.account_setup")


class AccountType(Enum):
    INDIVIDUAL_TAXABLE = "INDIVIDUAL_TAXABLE"
    JOINT_TAXABLE = "JOINT_TAXABLE"
    TRADITIONAL_IRA = "TRADITIONAL_IRA"
    ROTH_IRA = "ROTH_IRA"
    SEP_IRA = "SEP_IRA"
    SIMPLE_IRA = "SIMPLE_IRA"
    ROLLOVER_IRA = "ROLLOVER_IRA"
    CORPORATE = "CORPORATE"
    LLC = "LLC"
    PARTNERSHIP = "PARTNERSHIP"
    TRUST = "TRUST"


IRA_ACCOUNT_TYPES = frozenset({
    AccountType.TRADITIONAL_IRA, AccountType.ROTH_IRA, AccountType.SEP_IRA,
    AccountType.SIMPLE_IRA, AccountType.ROLLOVER_IRA,
})
ENTITY_ACCOUNT_TYPES = frozenset({AccountType.CORPORATE, AccountType.LLC, AccountType.PARTNERSHIP})


class AccountSetupStatus(Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    AWAITING_FUNDING = "AWAITING_FUNDING"
    FUNDING_IN_PROGRESS = "FUNDING_IN_PROGRESS"
    COMPLIANCE_REVIEW = "COMPLIANCE_REVIEW"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class StepStatus(Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


class ErrorSeverity(Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class AccountPurpose(Enum):
    RETIREMENT = "RETIREMENT"
    EDUCATION = "EDUCATION"
    GENERAL_INVESTMENT = "GENERAL_INVESTMENT"
    WEALTH_PRESERVATION = "WEALTH_PRESERVATION"
    INCOME_GENERATION = "INCOME_GENERATION"
    CAPITAL_APPRECIATION = "CAPITAL_APPRECIATION"
    SPECULATION = "SPECULATION"
    ESTATE_PLANNING = "ESTATE_PLANNING"


class TaxStatus(Enum):
    TAXABLE = "TAXABLE"
    TAX_DEFERRED = "TAX_DEFERRED"
    TAX_FREE = "TAX_FREE"
    TAX_EXEMPT = "TAX_EXEMPT"


class TradingPermission(Enum):
    EQUITIES = "EQUITIES"
    OPTIONS = "OPTIONS"
    FUTURES = "FUTURES"
    FOREX = "FOREX"
    FIXED_INCOME = "FIXED_INCOME"
    MUTUAL_FUNDS = "MUTUAL_FUNDS"
    ETFS = "ETFS"
    ALTERNATIVE_INVESTMENTS = "ALTERNATIVE_INVESTMENTS"
    MARGIN = "MARGIN"
    SHORT_SELLING = "SHORT_SELLING"


class AccountRestriction(Enum):
    NO_PENNY_STOCKS = "NO_PENNY_STOCKS"
    NO_OPTIONS = "NO_OPTIONS"
    NO_MARGIN = "NO_MARGIN"
    NO_SHORT_SELLING = "NO_SHORT_SELLING"
    INCOME_ONLY = "INCOME_ONLY"
    ESG_ONLY = "ESG_ONLY"
    NO_TOBACCO = "NO_TOBACCO"
    NO_FIREARMS = "NO_FIREARMS"
    SHARIA_COMPLIANT = "SHARIA_COMPLIANT"


class RiskTolerance(Enum):
    CONSERVATIVE = "CONSERVATIVE"
    MODERATELY_CONSERVATIVE = "MODERATELY_CONSERVATIVE"
    MODERATE = "MODERATE"
    MODERATELY_AGGRESSIVE = "MODERATELY_AGGRESSIVE"
    AGGRESSIVE = "AGGRESSIVE"


class InvestmentObjective(Enum):
    CAPITAL_PRESERVATION = "CAPITAL_PRESERVATION"
    INCOME = "INCOME"
    BALANCED = "BALANCED"
    GROWTH = "GROWTH"
    AGGRESSIVE_GROWTH = "AGGRESSIVE_GROWTH"
    SPECULATION = "SPECULATION"


class TimeHorizon(Enum):
    SHORT_TERM = "SHORT_TERM"
    MEDIUM_TERM = "MEDIUM_TERM"
    LONG_TERM = "LONG_TERM"


class LiquidityNeeds(Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class InvestmentExperience(Enum):
    NONE = "NONE"
    LIMITED = "LIMITED"
    MODERATE = "MODERATE"
    EXTENSIVE = "EXTENSIVE"
    PROFESSIONAL = "PROFESSIONAL"


@dataclass
class Beneficiary:
    name: str
    relationship: str
    allocation: Decimal = Decimal("100")
    beneficiary_type: str = "primary"  # primary or contingent


@dataclass
class Trustee:
    name: str
    trustee_type: str = "individual"
    powers: List[str] = field(default_factory=list)


@dataclass
class AuthorizedUser:
    name: str
    email: str = ""
    role: str = "signer"
    permissions: List[str] = field(default_factory=list)


@dataclass
class CustodianInfo:
    name: str
    code: str
    account_number: str
    contact: Dict[str, str] = field(default_factory=dict)


@dataclass
class AccountConfiguration:
    """What kind of account is being opened"""
    account_type: AccountType = AccountType.INDIVIDUAL_TAXABLE
    account_name: str = "Investment Account"
    account_purpose: AccountPurpose = AccountPurpose.GENERAL_INVESTMENT
    tax_status: TaxStatus = TaxStatus.TAXABLE
    jurisdiction: str = "US"
    base_currency: str = "USD"
    trading_permissions: List[TradingPermission] = field(default_factory=lambda: [
        TradingPermission.EQUITIES, TradingPermission.ETFS,
        TradingPermission.MUTUAL_FUNDS, TradingPermission.FIXED_INCOME,
    ])
    restrictions: List[AccountRestriction] = field(default_factory=list)
    beneficiaries: List[Beneficiary] = field(default_factory=list)
    trustees: List[Trustee] = field(default_factory=list)
    authorized_users: List[AuthorizedUser] = field(default_factory=list)
    custodian: Optional[CustodianInfo] = None


@dataclass
class BankingInstructions:
    bank_name: str
    routing_number: str
    account_number: str
    account_holder: str = ""
    account_kind: str = "checking"
    verified: bool = False
    verification_method: Optional[str] = None


@dataclass
class AchSetup:
    enabled: bool = True
    daily_limit: Decimal = Decimal("50000")
    monthly_limit: Decimal = Decimal("250000")
    min_processing_days: int = 1
    max_processing_days: int = 5


@dataclass
class CheckDepositSetup:
    enabled: bool = True
    daily_limit: Decimal = Decimal("25000")
    monthly_limit: Decimal = Decimal("100000")
    hold_period_days: int = 5


@dataclass
class FundingComplianceCheck:
    check_type: str
    status: str
    checked_at: datetime
    details: str = ""


@dataclass
class FundingSetup:
    """How and when the new account gets its first money"""
    initial_funding_required: bool = True
    minimum_initial_deposit: Decimal = Decimal("10000")
    planned_initial_deposit: Optional[Decimal] = None
    banking_instructions: List[BankingInstructions] = field(default_factory=list)
    ach: AchSetup = field(default_factory=AchSetup)
    check_deposit: CheckDepositSetup = field(default_factory=CheckDepositSetup)
    funding_deadline: Optional[datetime] = None
    compliance_checks: List[FundingComplianceCheck] = field(default_factory=list)


@dataclass
class AssetClassPreference:
    asset_class: str
    target_percentage: Decimal
    min_percentage: Optional[Decimal] = None
    max_percentage: Optional[Decimal] = None


@dataclass
class RebalancingPreference:
    automatic: bool = True
    frequency: str = "QUARTERLY"
    threshold_percent: Decimal = Decimal("5")
    method: str = "THRESHOLD_BASED"


@dataclass
class TaxOptimizationPreference:
    enabled: bool = True
    tax_loss_harvesting: bool = True
    asset_location: bool = True
    strategy: str = "tax_optimized"


@dataclass
class InvestmentPreferences:
    risk_tolerance: RiskTolerance = RiskTolerance.MODERATE
    investment_objectives: List[InvestmentObjective] = field(
        default_factory=lambda: [InvestmentObjective.BALANCED])
    time_horizon: TimeHorizon = TimeHorizon.LONG_TERM
    liquidity_needs: LiquidityNeeds = LiquidityNeeds.MEDIUM
    investment_experience: InvestmentExperience = InvestmentExperience.MODERATE
    asset_class_preferences: List[AssetClassPreference] = field(default_factory=lambda: [
        AssetClassPreference("Equities", Decimal("60")),
        AssetClassPreference("Fixed Income", Decimal("30")),
        AssetClassPreference("Cash", Decimal("10")),
    ])
    restricted_investments: List[str] = field(default_factory=list)
    rebalancing: RebalancingPreference = field(default_factory=RebalancingPreference)
    tax_optimization: TaxOptimizationPreference = field(default_factory=TaxOptimizationPreference)


@dataclass
class SetupError:
    code: str
    message: str
    severity: ErrorSeverity
    timestamp: datetime
    step_id: Optional[str] = None
    resolved: bool = False


@dataclass
class SetupStep:
    """One named unit of setup work"""
    id: str
    name: str
    description: str
    order: float
    status: StepStatus = StepStatus.PENDING
    dependencies: List[str] = field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    data: Dict[str, Any] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)


@dataclass
class AccountSetupRequest(StorageRecord):
    """Account setup aggregate, one per workflow attempt"""
    client_id: str
    tenant_id: str
    workflow_id: str
    account_configuration: AccountConfiguration
    funding_setup: FundingSetup
    investment_preferences: InvestmentPreferences
    status: AccountSetupStatus = AccountSetupStatus.PENDING
    setup_steps: List[SetupStep] = field(default_factory=list)
    errors: List[SetupError] = field(default_factory=list)
    completed_at: Optional[datetime] = None


class SetupStepError(Exception):
    """Raised by a step handler; CRITICAL severity halts the step chain"""

    def __init__(self, message: str, severity: ErrorSeverity = ErrorSeverity.HIGH):
        super().__init__(message)
        self.severity = severity


# Step catalogue: (name, description, order, dependencies)
BASE_STEPS: List[Tuple[str, str, float, List[str]]] = [
    ("Account Configuration Validation", "Validate account configuration parameters", 1, []),
    ("Regulatory Compliance Check", "Verify regulatory compliance for account type", 2,
     ["Account Configuration Validation"]),
    ("Tax Status Verification", "Verify tax status and implications", 3,
     ["Regulatory Compliance Check"]),
    ("Trading Permissions Setup", "Configure trading permissions and restrictions", 4,
     ["Tax Status Verification"]),
    ("Banking Integration", "Setup banking connections and verification", 5,
     ["Trading Permissions Setup"]),
    ("Funding Verification", "Verify funding sources and amounts", 6, ["Banking Integration"]),
    ("Investment Profile Setup", "Configure investment preferences and constraints", 7,
     ["Funding Verification"]),
    ("Account Provisioning", "Create and provision the account", 8, ["Investment Profile Setup"]),
]

IRA_STEP = ("IRA Compliance Validation", "Validate IRA-specific compliance requirements", 3.5,
            ["Tax Status Verification"])
ENTITY_STEP = ("Entity Verification", "Verify entity structure and authorized signers", 2.5,
               ["Regulatory Compliance Check"])
TRUST_STEP = ("Trust Document Review", "Review trust documents and trustee powers", 2.5,
              ["Regulatory Compliance Check"])

CUSTODIAN_NAME = "Investment Platform Custody"
CUSTODIAN_CODE = "IPC001"
CUSTODIAN_CONTACT = {
    'phone': "+1-800-CUSTODY",
    'email': "custody@investmentplatform.com",
    'address': "123 Financial St, New York, NY 10001",
}


def default_tax_status(account_type: AccountType) -> TaxStatus:
    if account_type == AccountType.ROTH_IRA:
        return TaxStatus.TAX_FREE
    if account_type in IRA_ACCOUNT_TYPES:
        return TaxStatus.TAX_DEFERRED
    return TaxStatus.TAXABLE


def build_account_configuration(partial: Optional[Dict[str, Any]] = None) -> AccountConfiguration:
    """Fill a partial configuration dictionary with defaults"""
    data = dict(partial or {})
    if 'account_type' in data and 'tax_status' not in data:
        data['tax_status'] = default_tax_status(AccountType(to_storage_value(data['account_type'])))
    return build_dataclass(AccountConfiguration, data)


def build_funding_setup(partial: Optional[Dict[str, Any]] = None) -> FundingSetup:
    data = dict(partial or {})
    config = get_config()
    data.setdefault('minimum_initial_deposit', config.minimum_initial_deposit)
    data.setdefault('funding_deadline',
                    datetime.now(timezone.utc) + timedelta(days=config.funding_timeline_days))
    return build_dataclass(FundingSetup, data)


def build_investment_preferences(partial: Optional[Dict[str, Any]] = None) -> InvestmentPreferences:
    return build_dataclass(InvestmentPreferences, dict(partial or {}))


def build_setup_steps(account_type: AccountType) -> List[SetupStep]:
    """Base steps plus the conditional steps for the account type, ordered"""
    catalogue = list(BASE_STEPS)
    if account_type in IRA_ACCOUNT_TYPES:
        catalogue.append(IRA_STEP)
    if account_type in ENTITY_ACCOUNT_TYPES:
        catalogue.append(ENTITY_STEP)
    if account_type == AccountType.TRUST:
        catalogue.append(TRUST_STEP)

    steps = [
        SetupStep(id=str(uuid.uuid4()), name=name, description=description,
                  order=order, dependencies=list(dependencies))
        for name, description, order, dependencies in catalogue
    ]
    steps = sort_by_order(steps)
    index_by_name(steps)
    return steps


class AccountSetupEngine(EventPublisherMixin):
    """Runs account setup requests step by step"""

    def __init__(
        self,
        storage: StorageInterface,
        audit_manager: Optional[AuditTrail] = None,
        event_dispatcher: Optional[EventDispatcher] = None
    ):
        self.storage = storage
        self.audit = audit_manager or AuditTrail(storage)
        self.set_event_dispatcher(event_dispatcher)
        self.setups_table = "account_setups"
        self._locks = KeyedLocks()

        self._handlers: Dict[str, Callable[[AccountSetupRequest, SetupStep], None]] = {
            "Account Configuration Validation": self._validate_account_configuration,
            "Regulatory Compliance Check": self._check_regulatory_compliance,
            "Tax Status Verification": self._verify_tax_status,
            "Trading Permissions Setup": self._setup_trading_permissions,
            "Banking Integration": self._setup_banking_integration,
            "Funding Verification": self._verify_funding,
            "Investment Profile Setup": self._setup_investment_profile,
            "Account Provisioning": self._provision_account,
            "IRA Compliance Validation": self._validate_ira_compliance,
            "Entity Verification": self._verify_entity,
            "Trust Document Review": self._review_trust_documents,
        }

    def initiate_account_setup(
        self,
        client_id: str,
        tenant_id: str,
        workflow_id: str,
        configuration: Optional[Dict[str, Any]] = None,
        funding: Optional[Dict[str, Any]] = None,
        preferences: Optional[Dict[str, Any]] = None
    ) -> AccountSetupRequest:
        """Create a setup request and run its step chain immediately"""
        account_configuration = build_account_configuration(configuration)
        now = datetime.now(timezone.utc)

        setup = AccountSetupRequest(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            client_id=client_id,
            tenant_id=tenant_id,
            workflow_id=workflow_id,
            account_configuration=account_configuration,
            funding_setup=build_funding_setup(funding),
            investment_preferences=build_investment_preferences(preferences),
            setup_steps=build_setup_steps(account_configuration.account_type)
        )
        self._save(setup)

        self.audit.log_event(
            AuditEventType.ACCOUNT_SETUP_INITIATED,
            'account_setup',
            setup.id,
            {
                'client_id': client_id,
                'workflow_id': workflow_id,
                'account_type': account_configuration.account_type.value,
                'steps': [step.name for step in setup.setup_steps]
            },
            client_id
        )
        logger.info(f"Account setup {setup.id} initiated for client {client_id} "
                    f"({account_configuration.account_type.value})")
        self.publish_event(DomainEvent.ACCOUNT_SETUP_INITIATED, 'account_setup', setup.id, setup.to_dict())

        return self.process_next_step(setup.id)

    def process_next_step(self, setup_id: str) -> AccountSetupRequest:
        """
        Execute eligible steps until none remain, then resolve the overall
        status. Raises ValueError when the setup does not exist.
        """
        with self._locks.hold(setup_id):
            setup = self._require_setup(setup_id)
            if setup.status in (AccountSetupStatus.COMPLETED, AccountSetupStatus.FAILED,
                                AccountSetupStatus.CANCELLED):
                return setup

            pending_events: List[Tuple[DomainEvent, Dict[str, Any]]] = []
            self._run_steps(setup, pending_events)
            setup.updated_at = datetime.now(timezone.utc)
            self._save(setup)

        for event_type, data in pending_events:
            self.publish_event(event_type, 'account_setup', setup_id, data)
        return setup

    def _run_steps(self, setup: AccountSetupRequest, pending_events: List[Tuple[DomainEvent, Dict[str, Any]]]) -> None:
        setup.status = AccountSetupStatus.IN_PROGRESS

        while True:
            step = find_next_eligible(setup.setup_steps, StepStatus.PENDING, StepStatus.COMPLETED)
            if step is None:
                break
            if not self._execute_step(setup, step, pending_events):
                self._record_outcome(setup, AccountSetupStatus.FAILED, pending_events, halted=True)
                return

        outcome = resolve_terminal_status(setup.setup_steps, StepStatus.COMPLETED, StepStatus.FAILED)
        if outcome == "COMPLETED":
            setup.completed_at = datetime.now(timezone.utc)
            self._record_outcome(setup, AccountSetupStatus.COMPLETED, pending_events)
        elif outcome == "FAILED":
            self._record_outcome(setup, AccountSetupStatus.FAILED, pending_events)

    def _execute_step(self, setup: AccountSetupRequest, step: SetupStep,
                      pending_events: List[Tuple[DomainEvent, Dict[str, Any]]]) -> bool:
        """Run one step; returns False when the chain must halt"""
        step.status = StepStatus.IN_PROGRESS
        step.started_at = datetime.now(timezone.utc)
        pending_events.append((DomainEvent.SETUP_STEP_STARTED, self._step_payload(setup, step)))

        try:
            handler = self._handlers.get(step.name)
            if handler is None:
                raise SetupStepError(f"Unknown setup step: {step.name}", ErrorSeverity.CRITICAL)
            handler(setup, step)
        except (SetupStepError, ValueError) as e:
            severity = getattr(e, 'severity', ErrorSeverity.HIGH)
            message = str(e)
            step.status = StepStatus.FAILED
            step.completed_at = datetime.now(timezone.utc)
            step.errors.append(message)
            setup.errors.append(SetupError(
                code="STEP_EXECUTION_FAILED",
                message=f'Step "{step.name}" failed: {message}',
                severity=severity,
                timestamp=step.completed_at,
                step_id=step.id
            ))

            self.audit.log_event(
                AuditEventType.SETUP_STEP_FAILED,
                'account_setup',
                setup.id,
                {'step': step.name, 'error': message, 'severity': severity.value},
                setup.client_id
            )
            logger.warning(f"Account setup {setup.id}: step '{step.name}' failed ({severity.value}): {message}")
            pending_events.append((DomainEvent.SETUP_STEP_FAILED, self._step_payload(setup, step)))
            return severity != ErrorSeverity.CRITICAL

        step.status = StepStatus.COMPLETED
        step.completed_at = datetime.now(timezone.utc)
        self.audit.log_event(
            AuditEventType.SETUP_STEP_COMPLETED,
            'account_setup',
            setup.id,
            {'step': step.name},
            setup.client_id
        )
        logger.debug(f"Account setup {setup.id}: step '{step.name}' completed")
        pending_events.append((DomainEvent.SETUP_STEP_COMPLETED, self._step_payload(setup, step)))
        return True

    def _record_outcome(self, setup: AccountSetupRequest, status: AccountSetupStatus,
                        pending_events: List[Tuple[DomainEvent, Dict[str, Any]]], halted: bool = False) -> None:
        setup.status = status
        if status == AccountSetupStatus.COMPLETED:
            audit_type, event_type = AuditEventType.ACCOUNT_SETUP_COMPLETED, DomainEvent.ACCOUNT_SETUP_COMPLETED
            logger.info(f"Account setup {setup.id} completed")
        else:
            audit_type, event_type = AuditEventType.ACCOUNT_SETUP_FAILED, DomainEvent.ACCOUNT_SETUP_FAILED
            logger.warning(f"Account setup {setup.id} failed{' (halted)' if halted else ''}")

        self.audit.log_event(
            audit_type,
            'account_setup',
            setup.id,
            {
                'workflow_id': setup.workflow_id,
                'halted': halted,
                'errors': [error.message for error in setup.errors if not error.resolved]
            },
            setup.client_id
        )
        pending_events.append((event_type, setup.to_dict()))

    def _step_payload(self, setup: AccountSetupRequest, step: SetupStep) -> Dict[str, Any]:
        return {
            'setup_id': setup.id,
            'workflow_id': setup.workflow_id,
            'client_id': setup.client_id,
            'step': to_storage_value(step)
        }

    # Step handlers

    def _validate_account_configuration(self, setup: AccountSetupRequest, step: SetupStep) -> None:
        configuration = setup.account_configuration

        if configuration.account_type == AccountType.ROTH_IRA and configuration.tax_status != TaxStatus.TAX_FREE:
            raise SetupStepError("Roth IRA must have tax-free status")

        if (TradingPermission.OPTIONS in configuration.trading_permissions and
                AccountRestriction.NO_OPTIONS in configuration.restrictions):
            raise SetupStepError("Conflicting configuration: Options trading enabled but restricted")

        if configuration.account_type in IRA_ACCOUNT_TYPES and not configuration.beneficiaries:
            raise SetupStepError("IRA accounts must have at least one beneficiary")

        step.data['validated_account_type'] = configuration.account_type.value

    def _check_regulatory_compliance(self, setup: AccountSetupRequest, step: SetupStep) -> None:
        jurisdiction = setup.account_configuration.jurisdiction
        if jurisdiction in get_config().restricted_jurisdictions:
            raise SetupStepError(
                f"Accounts cannot be opened in restricted jurisdiction {jurisdiction}",
                ErrorSeverity.CRITICAL
            )

        setup.funding_setup.compliance_checks.append(FundingComplianceCheck(
            check_type="regulatory_compliance",
            status="passed",
            checked_at=datetime.now(timezone.utc),
            details=f"Account type {setup.account_configuration.account_type.value} permitted in {jurisdiction}"
        ))

    def _verify_tax_status(self, setup: AccountSetupRequest, step: SetupStep) -> None:
        configuration = setup.account_configuration
        if configuration.account_type in IRA_ACCOUNT_TYPES and configuration.tax_status == TaxStatus.TAXABLE:
            raise SetupStepError("IRA accounts cannot have taxable status")
        step.data['tax_status'] = configuration.tax_status.value

    def _setup_trading_permissions(self, setup: AccountSetupRequest, step: SetupStep) -> None:
        permissions = setup.account_configuration.trading_permissions
        experience = setup.investment_preferences.investment_experience
        needs_experience = TradingPermission.OPTIONS in permissions or TradingPermission.MARGIN in permissions
        if needs_experience and experience == InvestmentExperience.NONE:
            raise SetupStepError("Options and margin trading require investment experience")
        step.data['permissions'] = [permission.value for permission in permissions]

    def _setup_banking_integration(self, setup: AccountSetupRequest, step: SetupStep) -> None:
        accounts = setup.funding_setup.banking_instructions
        for account in accounts:
            if not (account.routing_number.isdigit() and len(account.routing_number) == 9):
                raise SetupStepError(f"Invalid routing number for {account.bank_name}")
            account.verified = False
            account.verification_method = "micro_deposits"
        step.data['bank_accounts_pending_verification'] = len(accounts)

    def _verify_funding(self, setup: AccountSetupRequest, step: SetupStep) -> None:
        funding = setup.funding_setup
        if funding.initial_funding_required:
            if funding.planned_initial_deposit is None:
                raise SetupStepError("Initial funding is required but not specified")
            if funding.planned_initial_deposit < funding.minimum_initial_deposit:
                raise SetupStepError(
                    f"Planned deposit {funding.planned_initial_deposit} is below minimum "
                    f"{funding.minimum_initial_deposit}"
                )

        funding.compliance_checks.append(FundingComplianceCheck(
            check_type="funding_verification",
            status="passed",
            checked_at=datetime.now(timezone.utc)
        ))

    def _setup_investment_profile(self, setup: AccountSetupRequest, step: SetupStep) -> None:
        allocations = setup.investment_preferences.asset_class_preferences
        total = sum((allocation.target_percentage for allocation in allocations), Decimal("0"))
        tolerance = Decimal(get_config().allocation_tolerance)
        if abs(total - Decimal("100")) > tolerance:
            raise SetupStepError(f"Asset allocation must total 100%, currently {total}%")
        step.data['asset_classes'] = len(allocations)

    def _provision_account(self, setup: AccountSetupRequest, step: SetupStep) -> None:
        now = datetime.now(timezone.utc)
        account_number = f"ACC{int(now.timestamp() * 1000)}{uuid.uuid4().int % 1000:03d}"
        setup.account_configuration.custodian = CustodianInfo(
            name=CUSTODIAN_NAME,
            code=CUSTODIAN_CODE,
            account_number=account_number,
            contact=dict(CUSTODIAN_CONTACT)
        )
        step.data['account_number'] = account_number

    def _validate_ira_compliance(self, setup: AccountSetupRequest, step: SetupStep) -> None:
        primaries = [b for b in setup.account_configuration.beneficiaries if b.beneficiary_type == "primary"]
        if primaries:
            total = sum((b.allocation for b in primaries), Decimal("0"))
            if total != Decimal("100"):
                raise SetupStepError("Beneficiary allocations must total 100%")

    def _verify_entity(self, setup: AccountSetupRequest, step: SetupStep) -> None:
        if not setup.account_configuration.authorized_users:
            raise SetupStepError("Corporate accounts must have at least one authorized user")
        step.data['authorized_users'] = len(setup.account_configuration.authorized_users)

    def _review_trust_documents(self, setup: AccountSetupRequest, step: SetupStep) -> None:
        if not setup.account_configuration.trustees:
            raise SetupStepError("Trust accounts must have at least one trustee")
        step.data['trustees'] = len(setup.account_configuration.trustees)

    # Queries and updates

    def get_setup(self, setup_id: str) -> Optional[AccountSetupRequest]:
        data = self.storage.load(self.setups_table, setup_id)
        return AccountSetupRequest.from_dict(data) if data else None

    def get_setup_by_workflow(self, workflow_id: str) -> Optional[AccountSetupRequest]:
        """Most recent setup attempt for the workflow"""
        setups = [AccountSetupRequest.from_dict(data)
                  for data in self.storage.find(self.setups_table, {'workflow_id': workflow_id})]
        if not setups:
            return None
        return max(setups, key=lambda s: s.created_at)

    def get_setups_by_client(self, client_id: str) -> List[AccountSetupRequest]:
        setups = [AccountSetupRequest.from_dict(data)
                  for data in self.storage.find(self.setups_table, {'client_id': client_id})]
        return sorted(setups, key=lambda s: s.created_at)

    def update_setup_configuration(
        self,
        setup_id: str,
        configuration: Optional[Dict[str, Any]] = None,
        funding: Optional[Dict[str, Any]] = None,
        preferences: Optional[Dict[str, Any]] = None
    ) -> AccountSetupRequest:
        """
        Merge corrections into a setup and rerun it. FAILED steps go back to
        PENDING and outstanding errors are marked resolved. Changing the
        account type rebuilds the step list.
        """
        with self._locks.hold(setup_id):
            setup = self._require_setup(setup_id)
            if setup.status in (AccountSetupStatus.COMPLETED, AccountSetupStatus.CANCELLED):
                raise ValueError(f"Cannot update setup in status {setup.status.value}")

            previous_type = setup.account_configuration.account_type
            if configuration:
                merged = to_storage_value(setup.account_configuration)
                merged.update(configuration)
                if 'account_type' in configuration and 'tax_status' not in configuration:
                    merged.pop('tax_status', None)
                setup.account_configuration = build_account_configuration(merged)
            if funding:
                merged = to_storage_value(setup.funding_setup)
                merged.update(funding)
                setup.funding_setup = build_funding_setup(merged)
            if preferences:
                merged = to_storage_value(setup.investment_preferences)
                merged.update(preferences)
                setup.investment_preferences = build_investment_preferences(merged)

            if setup.account_configuration.account_type != previous_type:
                setup.setup_steps = build_setup_steps(setup.account_configuration.account_type)
            else:
                for step in setup.setup_steps:
                    if step.status == StepStatus.FAILED:
                        step.status = StepStatus.PENDING
                        step.started_at = None
                        step.completed_at = None
                        step.errors = []
            for error in setup.errors:
                error.resolved = True

            setup.status = AccountSetupStatus.IN_PROGRESS
            setup.updated_at = datetime.now(timezone.utc)
            self._save(setup)

            self.audit.log_event(
                AuditEventType.ACCOUNT_SETUP_UPDATED,
                'account_setup',
                setup.id,
                {
                    'configuration': sorted((configuration or {}).keys()),
                    'funding': sorted((funding or {}).keys()),
                    'preferences': sorted((preferences or {}).keys())
                },
                setup.client_id
            )
            logger.info(f"Account setup {setup.id} updated, rerunning steps")

            return self.process_next_step(setup_id)

    def get_setup_metrics(self, tenant_id: Optional[str] = None) -> Dict[str, Any]:
        filters = {'tenant_id': tenant_id} if tenant_id else {}
        setups = [AccountSetupRequest.from_dict(data) for data in self.storage.find(self.setups_table, filters)]

        completed = [s for s in setups if s.status == AccountSetupStatus.COMPLETED]
        failed = [s for s in setups if s.status == AccountSetupStatus.FAILED]
        in_progress = [s for s in setups if s.status == AccountSetupStatus.IN_PROGRESS]

        durations = [
            (s.completed_at - s.created_at).total_seconds() / 60
            for s in completed if s.completed_at
        ]

        reasons: Dict[str, int] = {}
        for setup in failed:
            for error in setup.errors:
                if not error.resolved:
                    reasons[error.message] = reasons.get(error.message, 0) + 1
        top_reasons = sorted(reasons.items(), key=lambda item: item[1], reverse=True)[:5]

        total = len(setups)
        return {
            'total_setups': total,
            'completed_setups': len(completed),
            'failed_setups': len(failed),
            'in_progress_setups': len(in_progress),
            'completion_rate': (len(completed) / total * 100) if total else 0.0,
            'average_setup_minutes': (sum(durations) / len(durations)) if durations else 0.0,
            'common_failure_reasons': [{'reason': reason, 'count': count} for reason, count in top_reasons]
        }

    def _require_setup(self, setup_id: str) -> AccountSetupRequest:
        setup = self.get_setup(setup_id)
        if not setup:
            raise ValueError("Account setup not found")
        return setup

    def _save(self, setup: AccountSetupRequest) -> None:
        self.storage.save(self.setups_table, setup.id, setup.to_dict())
