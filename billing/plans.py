"""
VendorTal Plan Catalog

Plan tiers (monthly, with annual variants at a 20% discount):
- Free: 5 vendors, 1 assessment, no payment required
- Starter: small teams, NIST tracking
- Professional: growing organizations, API access, custom branding
- Enterprise: unlimited, SSO, all features
- Federal: Enterprise plus FedRAMP/FISMA, custom pricing (contact sales)

Add-ons, bundles and one-time professional services are listed alongside.
The catalog is validated once at import; a broken catalog stops the process.
"""

import os
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from types import MappingProxyType
from typing import Optional, Dict, List, Iterable, Mapping, FrozenSet, Tuple

from billing.errors import CatalogIntegrityError, PlanNotFound

# Product types
MAIN = 'main'
ADDON = 'addon'
BUNDLE = 'bundle'
PRODUCT_TYPES = (MAIN, ADDON, BUNDLE)

# Billing cadences
MONTHLY = 'monthly'
ANNUAL = 'annual'
ONE_TIME = 'one_time'
CADENCES = (MONTHLY, ANNUAL, ONE_TIME)

UNLIMITED = -1
ALL_FEATURES = 'all_features'

# Metered resources
VENDORS = 'vendors'
ASSESSMENTS = 'assessments'
USERS = 'users'
API_CALLS = 'api_calls'
SBOM_SCANS = 'sbom_scans'
RESOURCES = (VENDORS, ASSESSMENTS, USERS, API_CALLS, SBOM_SCANS)

TIER_ORDER = ('free', 'starter', 'professional', 'enterprise', 'federal')

ANNUAL_DISCOUNT = Decimal('0.20')


@dataclass(frozen=True)
class Plan:
    id: str
    name: str
    cadence: str
    price: Optional[int]  # cents; None means custom pricing
    product_type: str = MAIN
    tier: Optional[str] = None
    features: FrozenSet[str] = frozenset()
    limits: Mapping[str, int] = field(default_factory=dict)
    frameworks: Tuple[str, ...] = ()
    inherits: Optional[str] = None
    stripe_price_id: Optional[str] = None
    description: str = ''

    def __post_init__(self):
        if self.cadence not in CADENCES:
            raise CatalogIntegrityError(f'Plan {self.id}: unknown cadence {self.cadence!r}')
        if self.product_type not in PRODUCT_TYPES:
            raise CatalogIntegrityError(f'Plan {self.id}: unknown product type {self.product_type!r}')
        object.__setattr__(self, 'features', frozenset(self.features))
        object.__setattr__(self, 'limits', MappingProxyType(dict(self.limits)))
        object.__setattr__(self, 'frameworks', tuple(self.frameworks))

    @property
    def contact_sales(self) -> bool:
        return self.price is None

    @property
    def is_recurring(self) -> bool:
        return self.cadence != ONE_TIME

    @property
    def interval(self) -> Optional[str]:
        """Stripe recurring interval."""
        return {MONTHLY: 'month', ANNUAL: 'year'}.get(self.cadence)

    def limit(self, resource: str) -> int:
        return self.limits.get(resource, 0)

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'cadence': self.cadence,
            'interval': self.interval,
            'price': self.price,
            'contact_sales': self.contact_sales,
            'product_type': self.product_type,
            'tier': self.tier,
            'features': sorted(self.features),
            'limits': dict(self.limits),
            'frameworks': list(self.frameworks),
            'inherits': self.inherits,
        }


class PlanCatalog:
    """Read-only registry of published plans, keyed by plan id."""

    def __init__(self, plans: Iterable[Plan], fallback_plan_id: str = 'free'):
        plans = list(plans)

        seen = set()
        duplicates = set()
        for plan in plans:
            if plan.id in seen:
                duplicates.add(plan.id)
            seen.add(plan.id)
        if duplicates:
            duplicates = sorted(duplicates)
            raise CatalogIntegrityError(f"Duplicate plan ids: {', '.join(duplicates)}")

        self._plans: Mapping[str, Plan] = MappingProxyType({p.id: p for p in plans})

        if fallback_plan_id not in self._plans:
            raise CatalogIntegrityError(f'Fallback plan {fallback_plan_id!r} is not in the catalog')
        self._fallback_plan_id = fallback_plan_id

        prices = {}
        for plan in plans:
            if plan.inherits is not None and plan.inherits not in self._plans:
                raise CatalogIntegrityError(
                    f'Plan {plan.id} inherits from unknown plan {plan.inherits!r}'
                )
            if plan.stripe_price_id:
                if plan.stripe_price_id in prices:
                    raise CatalogIntegrityError(
                        f'Stripe price {plan.stripe_price_id} used by both '
                        f'{prices[plan.stripe_price_id]} and {plan.id}'
                    )
                prices[plan.stripe_price_id] = plan.id
        self._by_price: Mapping[str, str] = MappingProxyType(prices)

        # Walk every chain now so cycles surface at load time.
        self._features: Mapping[str, FrozenSet[str]] = MappingProxyType(
            {plan_id: self._collect_features(plan_id) for plan_id in self._plans}
        )

    def _collect_features(self, plan_id: str) -> FrozenSet[str]:
        features = set()
        chain = []
        current = plan_id
        while current is not None:
            if current in chain:
                cycle = ' -> '.join(chain + [current])
                raise CatalogIntegrityError(f'Plan inheritance cycle: {cycle}')
            chain.append(current)
            plan = self._plans[current]
            features |= plan.features
            current = plan.inherits
        return frozenset(features)

    def __contains__(self, plan_id) -> bool:
        return plan_id in self._plans

    def __iter__(self):
        return iter(self._plans.values())

    def __len__(self) -> int:
        return len(self._plans)

    @property
    def fallback_plan(self) -> Plan:
        """Most restrictive main tier, used when a subscription cannot be resolved."""
        return self._plans[self._fallback_plan_id]

    def get_plan(self, plan_id: str) -> Plan:
        plan = self._plans.get(plan_id)
        if plan is None:
            raise PlanNotFound(plan_id)
        return plan

    def find_plan(self, plan_id: str) -> Optional[Plan]:
        return self._plans.get(plan_id)

    def list_plans(self, product_type: Optional[str] = None, cadence: Optional[str] = None) -> List[Plan]:
        return [
            plan for plan in self._plans.values()
            if (product_type is None or plan.product_type == product_type)
            and (cadence is None or plan.cadence == cadence)
        ]

    def get_plan_by_stripe_price(self, stripe_price_id: str) -> Optional[Plan]:
        plan_id = self._by_price.get(stripe_price_id)
        return self._plans[plan_id] if plan_id else None

    def inherited_features(self, plan_id: str) -> FrozenSet[str]:
        """Features of a plan including everything up its inheritance chain."""
        if plan_id not in self._features:
            raise PlanNotFound(plan_id)
        return self._features[plan_id]


def _price_id(plan_id: str) -> str:
    # Price IDs are created in the Stripe dashboard and injected per environment
    return os.environ.get(f'STRIPE_PRICE_{plan_id.upper()}', f'price_{plan_id}')


def _annual(plan: Plan, price: Optional[int], description: str) -> Plan:
    annual_id = f'{plan.id}_annual'
    return Plan(
        id=annual_id,
        name=plan.name.replace('(Monthly)', '(Annual)') if '(Monthly)' in plan.name else f'{plan.name} (Annual)',
        cadence=ANNUAL,
        price=price,
        product_type=plan.product_type,
        tier=plan.tier,
        features=frozenset(),
        limits=plan.limits,
        frameworks=plan.frameworks,
        inherits=plan.id,
        stripe_price_id=_price_id(annual_id) if price else None,
        description=description,
    )


FREE = Plan(
    id='free',
    name='Free',
    description='Get started with basic features',
    cadence=MONTHLY,
    price=0,
    tier='free',
    features={'basic_dashboard', 'basic_vendor_management', 'basic_reporting', 'basic_compliance_tracking'},
    limits={VENDORS: 5, ASSESSMENTS: 1, USERS: 1, API_CALLS: 0, SBOM_SCANS: 0},
    frameworks=('NIST',),
)

STARTER = Plan(
    id='starter',
    name='Starter',
    description='Suitable for small teams getting started',
    cadence=MONTHLY,
    price=4900,
    tier='starter',
    features={'nist_compliance', 'pdf_export', 'email_support', 'standard_templates', 'data_export'},
    limits={VENDORS: 10, ASSESSMENTS: 5, USERS: 1, API_CALLS: 100, SBOM_SCANS: 0},
    frameworks=('NIST',),
    inherits='free',
    stripe_price_id=_price_id('starter'),
)

PROFESSIONAL = Plan(
    id='professional',
    name='Professional',
    description='Additional features for growing organizations',
    cadence=MONTHLY,
    price=14900,
    tier='professional',
    features={
        'advanced_analytics', 'api_access', 'threat_intelligence', 'workflow_automation',
        'custom_templates', 'priority_support', 'custom_branding', 'sbom_integration_addon',
    },
    limits={VENDORS: 50, ASSESSMENTS: 20, USERS: 5, API_CALLS: 10000, SBOM_SCANS: 0},
    frameworks=('NIST', 'CMMC'),
    inherits='starter',
    stripe_price_id=_price_id('professional'),
)

ENTERPRISE = Plan(
    id='enterprise',
    name='Enterprise',
    description='Comprehensive solution for large organizations',
    cadence=MONTHLY,
    price=44900,
    tier='enterprise',
    features={
        ALL_FEATURES, 'sso_saml', 'multi_tenant', 'custom_integrations',
        'dedicated_support', 'sla_guarantees', 'professional_services',
    },
    limits={VENDORS: UNLIMITED, ASSESSMENTS: UNLIMITED, USERS: UNLIMITED, API_CALLS: UNLIMITED, SBOM_SCANS: 0},
    frameworks=('NIST', 'CMMC', 'SOC2', 'ISO27001', 'FEDRAMP', 'FISMA'),
    inherits='professional',
    stripe_price_id=_price_id('enterprise'),
)

FEDERAL = Plan(
    id='federal',
    name='Federal',
    description='Premium compliance incl. NIST SP 800-161 Extended and full audit',
    cadence=MONTHLY,
    price=None,  # contact sales
    tier='federal',
    features={'nist_800_161_extended', 'enhanced_audit_logging', 'long_term_evidence_retention'},
    limits={VENDORS: UNLIMITED, ASSESSMENTS: UNLIMITED, USERS: UNLIMITED, API_CALLS: UNLIMITED, SBOM_SCANS: 0},
    frameworks=('FEDRAMP', 'FISMA', 'NIST', 'CMMC'),
    inherits='enterprise',
)

MAIN_PLANS = [
    FREE,
    STARTER,
    PROFESSIONAL,
    ENTERPRISE,
    FEDERAL,
    _annual(STARTER, 47000, 'Starter billed annually (save 20%)'),
    _annual(PROFESSIONAL, 143000, 'Professional billed annually (save 20%)'),
    _annual(ENTERPRISE, 431000, 'Enterprise billed annually (save 20%)'),
    _annual(FEDERAL, None, 'Federal billed annually, custom pricing'),
]


SBOM_INTEGRATION = Plan(
    id='sbom_integration',
    name='SBOM Integration (Monthly)',
    description='Software bill of materials scanning for Professional and above',
    cadence=MONTHLY,
    price=9900,
    product_type=ADDON,
    features={'sbom_integration'},
    limits={SBOM_SCANS: 100},
    stripe_price_id=_price_id('sbom_integration'),
)

WHITE_LABEL_BRANDING = Plan(
    id='white_label_branding',
    name='White-Label Branding (Monthly)',
    description='Custom branding and white-label options',
    cadence=MONTHLY,
    price=50000,
    product_type=ADDON,
    features={'custom_branding', 'white_label_domain', 'branded_reports'},
    stripe_price_id=_price_id('white_label_branding'),
)

COMPLIANCE_CONSULTING = Plan(
    id='compliance_consulting',
    name='Compliance Consulting (Monthly)',
    description='Two hours of expert compliance consulting per month',
    cadence=MONTHLY,
    price=20000,
    product_type=ADDON,
    features={'compliance_consulting'},
    stripe_price_id=_price_id('compliance_consulting'),
)

ADDON_PLANS = [
    SBOM_INTEGRATION,
    WHITE_LABEL_BRANDING,
    COMPLIANCE_CONSULTING,
    _annual(SBOM_INTEGRATION, 95000, 'SBOM Integration billed annually (save 20%)'),
    _annual(WHITE_LABEL_BRANDING, 480000, 'White-label branding billed annually (save 20%)'),
    _annual(COMPLIANCE_CONSULTING, 192000, '24 hours of consulting per year (save 20%)'),
]


COMPLIANCE_SUITE = Plan(
    id='compliance_suite',
    name='Compliance Suite (Monthly)',
    description='Complete compliance package with NIST, CMMC, and SOC2',
    cadence=MONTHLY,
    price=29900,
    product_type=BUNDLE,
    tier='compliance_suite',
    features={'soc2_compliance', 'compliance_consulting'},
    limits={VENDORS: 200, ASSESSMENTS: 1000, USERS: 50, API_CALLS: 10000, SBOM_SCANS: 0},
    frameworks=('NIST', 'CMMC', 'SOC2'),
    inherits='professional',
    stripe_price_id=_price_id('compliance_suite'),
)

ENTERPRISE_PLUS = Plan(
    id='enterprise_plus',
    name='Enterprise Plus (Monthly)',
    description='Enterprise with every compliance framework and consulting included',
    cadence=MONTHLY,
    price=59900,
    product_type=BUNDLE,
    tier='enterprise_plus',
    features={'compliance_consulting', 'dedicated_success_manager'},
    limits={VENDORS: UNLIMITED, ASSESSMENTS: UNLIMITED, USERS: UNLIMITED, API_CALLS: UNLIMITED, SBOM_SCANS: 0},
    frameworks=('NIST', 'CMMC', 'SOC2', 'ISO27001', 'FEDRAMP', 'FISMA'),
    inherits='enterprise',
    stripe_price_id=_price_id('enterprise_plus'),
)

BUNDLE_PLANS = [
    COMPLIANCE_SUITE,
    ENTERPRISE_PLUS,
    _annual(COMPLIANCE_SUITE, 287000, 'Compliance Suite billed annually (save 20%)'),
    _annual(ENTERPRISE_PLUS, 575000, 'Enterprise Plus billed annually (save 20%)'),
]


def _service(plan_id: str, name: str, price: int, description: str, frameworks=()) -> Plan:
    return Plan(
        id=plan_id,
        name=name,
        description=description,
        cadence=ONE_TIME,
        price=price,
        product_type=ADDON,
        frameworks=frameworks,
        stripe_price_id=_price_id(plan_id),
    )


ONE_TIME_PLANS = [
    _service('quick_start_package', 'Quick Start Package', 500000,
             'Platform setup, vendor import and team training in 5 days', ('NIST', 'CMMC')),
    _service('nist_compliance_audit', 'NIST Compliance Audit', 1000000,
             'Gap analysis against NIST SP 800-161 with remediation roadmap', ('NIST',)),
    _service('custom_integration', 'Custom Integration', 2500000,
             'Connect VendorTal to SIEM and workflow tools'),
    _service('federal_compliance_package', 'Federal Compliance Package', 5000000,
             'FedRAMP and FISMA readiness', ('FEDRAMP', 'FISMA', 'NIST')),
    _service('training_certification', 'Training & Certification Session', 250000,
             'Team training program with follow-up support'),
    _service('consulting_hours_block', 'Compliance Consulting Hours (10-hour block)', 200000,
             'Pre-paid block of expert consulting hours', ('NIST',)),
]


CATALOG = PlanCatalog(MAIN_PLANS + ADDON_PLANS + BUNDLE_PLANS + ONE_TIME_PLANS, fallback_plan_id='free')

print(
    f"[CATALOG] Loaded {len(CATALOG)} plans: "
    f"{len(CATALOG.list_plans(product_type=MAIN))} main, "
    f"{len(CATALOG.list_plans(product_type=ADDON))} add-on, "
    f"{len(CATALOG.list_plans(product_type=BUNDLE))} bundle",
    flush=True
)


def get_plan(plan_id: str) -> Plan:
    """
    Get a plan by ID.

    Args:
        plan_id: The plan identifier ('free', 'starter', 'professional_annual', ...)

    Returns:
        The Plan

    Raises:
        PlanNotFound: if the id is not in the catalog
    """
    return CATALOG.get_plan(plan_id)


def list_plans(product_type: Optional[str] = None, cadence: Optional[str] = None) -> List[Plan]:
    """
    List published plans, optionally filtered.

    Args:
        product_type: 'main', 'addon' or 'bundle'
        cadence: 'monthly', 'annual' or 'one_time'

    Returns:
        Matching plans in catalog order
    """
    return CATALOG.list_plans(product_type=product_type, cadence=cadence)


def get_plan_by_stripe_price(stripe_price_id: str) -> Optional[Plan]:
    """Look up a plan by its Stripe price ID."""
    return CATALOG.get_plan_by_stripe_price(stripe_price_id)


def is_purchasable(plan: Plan) -> bool:
    """True when the plan can go through self-service checkout."""
    return bool(plan.price) and bool(plan.stripe_price_id)


def get_upgrade_recommendation(plan_id: str, catalog: PlanCatalog = CATALOG) -> Optional[str]:
    """
    Get the recommended upgrade plan when a limit is hit.

    Args:
        plan_id: Current plan ID
        catalog: Catalog to search

    Returns:
        Next tier up on the same cadence, or None if already on the highest tier
    """
    plan = catalog.find_plan(plan_id)
    if plan is None or plan.tier not in TIER_ORDER:
        return None

    for tier in TIER_ORDER[TIER_ORDER.index(plan.tier) + 1:]:
        candidates = [
            p for p in catalog.list_plans(product_type=MAIN)
            if p.tier == tier
        ]
        same_cadence = [p for p in candidates if p.cadence == plan.cadence]
        # Free has no annual variant; the monthly starter plan is the way up
        choice = (same_cadence or candidates or [None])[0]
        if choice is not None:
            return choice.id
    return None


def calculate_annual_savings(monthly_price: int) -> int:
    """Cents saved per year by paying annually instead of monthly."""
    yearly = Decimal(monthly_price * 12)
    discounted = (yearly * (1 - ANNUAL_DISCOUNT)).quantize(Decimal('1'), rounding=ROUND_HALF_UP)
    return int(yearly - discounted)


# Plan comparison matrix for marketing/UI
PLAN_COMPARISON = {
    'headers': ['Feature', 'Free', 'Starter', 'Professional', 'Enterprise', 'Federal'],
    'rows': [
        ['Vendors', '5', '10', '50', 'Unlimited', 'Unlimited'],
        ['Assessments per month', '1', '5', '20', 'Unlimited', 'Unlimited'],
        ['Users', '1', '1', '5', 'Unlimited', 'Unlimited'],
        ['API calls per month', '-', '100', '10,000', 'Unlimited', 'Unlimited'],
        ['SBOM scanning', '-', '-', 'Add-on', 'Add-on', 'Add-on'],
        ['Custom branding', '-', '-', 'Included', 'Included', 'Included'],
        ['SSO/SAML', '-', '-', '-', 'Included', 'Included'],
        ['Support', 'Community', 'Email', 'Priority', 'Dedicated', 'Dedicated federal'],
        ['Price', '$0', '$49/mo', '$149/mo', '$449/mo', 'Contact sales'],
    ]
}
