from collections import Counter

import pytest

from classify_billing import (
    DEFAULT_API_VERSIONS,
    ClassificationRecord,
    Subscription,
    billing_account_url,
    customers_url,
    lots_url,
    subscription_url,
)


class FakeBillingApi:
    """Scripted stand-in for BillingApi: URL -> payload, counting every call."""

    def __init__(self, subscriptions=None):
        self.subscriptions = list(subscriptions or [])
        self.responses = {}
        self.calls = Counter()

    def fetch_json(self, url):
        self.calls[url] += 1
        return self.responses.get(url)

    def list_subscriptions(self, api_version):
        return list(self.subscriptions)

    def add_subscription(self, sub_id, name, scope=None, quota_id='EnterpriseAgreement_2014-09-01'):
        self.subscriptions.append(Subscription(id=sub_id, name=name))
        policies = {'quotaId': quota_id}
        if scope is not None:
            policies['billingScopeId'] = scope
        self.responses[subscription_url(sub_id, DEFAULT_API_VERSIONS['subscription'])] = {
            'id': f'/subscriptions/{sub_id}',
            'subscriptionPolicies': policies,
        }

    def add_account(self, account_id, agreement_type=None, customers=0, lots=0):
        billing = DEFAULT_API_VERSIONS['billing']
        account = {'name': account_id, 'properties': {}}
        if agreement_type is not None:
            account['properties']['agreementType'] = agreement_type
        self.responses[billing_account_url(account_id, billing)] = account
        self.responses[customers_url(account_id, billing)] = {
            'value': [{'name': f'cust{i}'} for i in range(customers)]
        }
        self.responses[lots_url(account_id, DEFAULT_API_VERSIONS['consumption'])] = {
            'value': [{'name': f'lot{i}'} for i in range(lots)]
        }

    def account_calls(self, account_id):
        billing = DEFAULT_API_VERSIONS['billing']
        return {
            'account': self.calls[billing_account_url(account_id, billing)],
            'customers': self.calls[customers_url(account_id, billing)],
            'lots': self.calls[lots_url(account_id, DEFAULT_API_VERSIONS['consumption'])],
        }


@pytest.fixture
def fake_api():
    return FakeBillingApi()


@pytest.fixture
def make_record():
    def _make(name='sub', sub_id=None, **kwargs):
        return ClassificationRecord(subscription_name=name, subscription_id=sub_id or f'id-{name}', **kwargs)
    return _make
