from dataclasses import FrozenInstanceError

import pytest

from billing.errors import CatalogIntegrityError, PlanNotFound
from billing.plans import (
    Plan, PlanCatalog, MONTHLY, ANNUAL, ONE_TIME, ADDON, BUNDLE, MAIN, UNLIMITED,
    VENDORS, SBOM_SCANS, is_purchasable, get_upgrade_recommendation,
    calculate_annual_savings,
)


def _plan(plan_id, **kwargs):
    kwargs.setdefault('cadence', MONTHLY)
    kwargs.setdefault('price', 0)
    return Plan(id=plan_id, name=plan_id.title(), **kwargs)


def test_catalog_has_every_product(catalog):
    expected = {
        'free', 'starter', 'professional', 'enterprise', 'federal',
        'starter_annual', 'professional_annual', 'enterprise_annual', 'federal_annual',
        'sbom_integration', 'white_label_branding', 'compliance_consulting',
        'sbom_integration_annual', 'white_label_branding_annual', 'compliance_consulting_annual',
        'compliance_suite', 'enterprise_plus', 'compliance_suite_annual', 'enterprise_plus_annual',
        'quick_start_package', 'nist_compliance_audit', 'custom_integration',
        'federal_compliance_package', 'training_certification', 'consulting_hours_block',
    }
    assert {p.id for p in catalog} == expected
    assert len(catalog) == len(expected)


def test_get_plan_unknown_raises(catalog):
    with pytest.raises(PlanNotFound):
        catalog.get_plan('platinum')
    assert catalog.find_plan('platinum') is None


def test_list_plans_filters(catalog):
    addons = catalog.list_plans(product_type=ADDON)
    assert addons and all(p.product_type == ADDON for p in addons)

    annual_bundles = catalog.list_plans(product_type=BUNDLE, cadence=ANNUAL)
    assert [p.id for p in annual_bundles] == ['compliance_suite_annual', 'enterprise_plus_annual']

    services = catalog.list_plans(cadence=ONE_TIME)
    assert len(services) == 6


def test_tier_limits(catalog):
    assert catalog.get_plan('free').limit(VENDORS) == 5
    assert catalog.get_plan('starter').limit(VENDORS) == 10
    assert catalog.get_plan('professional').limit(VENDORS) == 50
    assert catalog.get_plan('enterprise').limit(VENDORS) == UNLIMITED
    assert catalog.get_plan('enterprise').limit(SBOM_SCANS) == 0
    assert catalog.get_plan('starter').limit('widgets') == 0


def test_features_inherit_up_the_chain(catalog):
    features = catalog.inherited_features('professional')
    assert 'api_access' in features
    assert 'nist_compliance' in features
    assert 'basic_dashboard' in features
    assert 'sso_saml' not in features


def test_annual_variant_mirrors_monthly(catalog):
    annual = catalog.get_plan('starter_annual')
    monthly = catalog.get_plan('starter')
    assert annual.cadence == ANNUAL
    assert annual.tier == 'starter'
    assert annual.inherits == 'starter'
    assert dict(annual.limits) == dict(monthly.limits)
    assert catalog.inherited_features('starter_annual') == catalog.inherited_features('starter')


def test_plans_are_immutable(catalog):
    plan = catalog.get_plan('starter')
    with pytest.raises(FrozenInstanceError):
        plan.price = 1
    with pytest.raises(TypeError):
        plan.limits[VENDORS] = 1000


def test_purchasable(catalog):
    assert is_purchasable(catalog.get_plan('starter'))
    assert not is_purchasable(catalog.get_plan('free'))
    federal = catalog.get_plan('federal')
    assert federal.contact_sales
    assert not is_purchasable(federal)
    assert not is_purchasable(catalog.get_plan('federal_annual'))


def test_stripe_price_lookup(catalog):
    starter = catalog.get_plan('starter')
    assert catalog.get_plan_by_stripe_price(starter.stripe_price_id) is starter
    assert catalog.get_plan_by_stripe_price('price_nope') is None


def test_upgrade_recommendation(catalog):
    assert get_upgrade_recommendation('free', catalog) == 'starter'
    assert get_upgrade_recommendation('starter', catalog) == 'professional'
    assert get_upgrade_recommendation('starter_annual', catalog) == 'professional_annual'
    assert get_upgrade_recommendation('enterprise', catalog) == 'federal'
    assert get_upgrade_recommendation('federal', catalog) is None
    assert get_upgrade_recommendation('compliance_suite', catalog) is None


def test_annual_savings():
    assert calculate_annual_savings(4900) == 11760


class TestCatalogIntegrity:

    def test_duplicate_ids(self):
        with pytest.raises(CatalogIntegrityError, match='Duplicate'):
            PlanCatalog([_plan('free'), _plan('free')])

    def test_unknown_fallback(self):
        with pytest.raises(CatalogIntegrityError, match='Fallback'):
            PlanCatalog([_plan('starter')], fallback_plan_id='free')

    def test_dangling_inherits(self):
        with pytest.raises(CatalogIntegrityError, match='unknown plan'):
            PlanCatalog([_plan('free'), _plan('starter', inherits='basic')])

    def test_inheritance_cycle(self):
        with pytest.raises(CatalogIntegrityError, match='cycle'):
            PlanCatalog([_plan('free'), _plan('a', inherits='b'), _plan('b', inherits='a')])

    def test_duplicate_price_ids(self):
        with pytest.raises(CatalogIntegrityError, match='price_x'):
            PlanCatalog([
                _plan('free'),
                _plan('a', stripe_price_id='price_x'),
                _plan('b', stripe_price_id='price_x'),
            ])

    def test_bad_cadence(self):
        with pytest.raises(CatalogIntegrityError):
            _plan('weekly', cadence='weekly')

    def test_valid_catalog(self):
        catalog = PlanCatalog([_plan('free', product_type=MAIN), _plan('pro', inherits='free')])
        assert catalog.fallback_plan.id == 'free'
