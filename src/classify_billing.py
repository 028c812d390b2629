"""
Azure Billing Classification CLI

Classifies Azure subscriptions by billing structure:
  - agreement type of the parent billing account (EA vs MCA)
  - CSP (channel partner) indicators from the billing scope and customer list
  - MACC (consumption commitment) lots under the billing account

Usage:
    python src/classify_billing.py
    python src/classify_billing.py billing.csv --no-details
    python src/classify_billing.py --config config.yaml --xlsx billing.xlsx
"""

import sys
import copy
import time
import logging
import argparse
import datetime as dt
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

import yaml
import numpy as np
import pandas as pd
import requests
from azure.core.exceptions import ClientAuthenticationError
from azure.identity import DefaultAzureCredential

log = logging.getLogger(__name__)

ARM_ENDPOINT = 'https://management.azure.com'
ARM_SCOPE = 'https://management.azure.com/.default'

DEFAULT_OUTPUT = 'azure-billing-classification.csv'
DEFAULT_API_VERSIONS = {
    'subscription': '2020-01-01',
    'billing': '2024-04-01',
    'consumption': '2024-08-01',
}
DEFAULT_CONFIG = {
    'output': {'csv': DEFAULT_OUTPUT, 'xlsx': None},
    'api_versions': dict(DEFAULT_API_VERSIONS),
    'display': {'show_details': True},
    'http': {'timeout': 60},
}

ENTERPRISE_AGREEMENT = 'EnterpriseAgreement'
CUSTOMER_AGREEMENT = 'MicrosoftCustomerAgreement'
AGREEMENT_LABELS = {
    ENTERPRISE_AGREEMENT: 'Enterprise Agreement',
    CUSTOMER_AGREEMENT: 'Microsoft Customer Agr',
}

BILLING_ACCOUNT_SEGMENT = 'billingAccounts'
CSP_SCOPE_MARKER = '/customers/'

EVIDENCE_SCOPE = 'scope path indicates channel-partner customer'
EVIDENCE_CUSTOMERS = 'parent account has registered customer entities'

CSV_COLUMNS = [
    'SubscriptionName', 'SubscriptionId', 'OfferType', 'AgreementType',
    'IsCSP', 'CSPEvidence', 'HasMACC', 'BillingAccountId', 'BillingScopeId',
]


class ConfigError(Exception):
    pass


class NoSubscriptionsError(Exception):
    pass


# ── Configuration ───────────────────────────────────────────────────────


def _validate_config(config: dict):
    if not config['output'].get('csv'):
        raise ConfigError("Missing required output path: 'output.csv'")
    for key in ('csv', 'xlsx'):
        value = config['output'][key]
        if value is not None and not isinstance(value, str):
            raise ConfigError(f"output.{key} must be a file path, got {value!r}")

    for key in DEFAULT_API_VERSIONS:
        value = config['api_versions'].get(key)
        # Unquoted YAML versions like 2024-04-01 load as dates
        if isinstance(value, dt.date):
            value = value.isoformat()
            config['api_versions'][key] = value
        if not isinstance(value, str) or not value.strip():
            raise ConfigError(f"api_versions.{key} must be a non-empty string, got {value!r}")

    if not isinstance(config['display']['show_details'], bool):
        raise ConfigError("display.show_details must be true or false")

    timeout = config['http']['timeout']
    if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
        raise ConfigError(f"http.timeout must be a positive number, got {timeout!r}")


def load_config(config_path: str = None, output_override: str = None, xlsx_override: str = None,
                api_version_overrides: dict = None, show_details: bool = None,
                timeout: float = None) -> dict:
    config = copy.deepcopy(DEFAULT_CONFIG)
    base_dir = Path.cwd()

    if config_path:
        config_path = Path(config_path).resolve()
        if not config_path.exists():
            raise ConfigError(f"Config file not found: {config_path}")

        with open(config_path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ConfigError(f"Config file must contain a mapping: {config_path}")

        base_dir = config_path.parent
        for section, values in data.items():
            if section not in DEFAULT_CONFIG:
                raise ConfigError(f"Unknown config section: '{section}'")
            if not isinstance(values, dict):
                raise ConfigError(f"Config section '{section}' must be a mapping")
            for key, value in values.items():
                if key not in DEFAULT_CONFIG[section]:
                    raise ConfigError(f"Unknown config key: '{section}.{key}'")
                config[section][key] = value

    _validate_config(config)

    resolved = {'csv': (base_dir / config['output']['csv']).resolve(), 'xlsx': None}
    if config['output']['xlsx']:
        resolved['xlsx'] = (base_dir / config['output']['xlsx']).resolve()

    if output_override:
        resolved['csv'] = Path(output_override).resolve()
    if xlsx_override:
        resolved['xlsx'] = Path(xlsx_override).resolve()
    for key, value in (api_version_overrides or {}).items():
        if value:
            config['api_versions'][key] = value
    if show_details is not None:
        config['display']['show_details'] = show_details
    if timeout is not None:
        if timeout <= 0:
            raise ConfigError(f"--timeout must be positive, got {timeout}")
        config['http']['timeout'] = timeout

    config['_resolved_paths'] = resolved
    return config


# ── Billing API ─────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Subscription:
    id: str
    name: str


def subscription_url(subscription_id: str, api_version: str) -> str:
    return f"{ARM_ENDPOINT}/subscriptions/{subscription_id}?api-version={api_version}"


def billing_account_url(account_id: str, api_version: str) -> str:
    return f"{ARM_ENDPOINT}/providers/Microsoft.Billing/billingAccounts/{account_id}?api-version={api_version}"


def customers_url(account_id: str, api_version: str) -> str:
    return f"{ARM_ENDPOINT}/providers/Microsoft.Billing/billingAccounts/{account_id}/customers?api-version={api_version}"


def lots_url(account_id: str, api_version: str) -> str:
    return (
        f"{ARM_ENDPOINT}/providers/Microsoft.Billing/billingAccounts/{account_id}"
        f"/providers/Microsoft.Consumption/lots?api-version={api_version}"
    )


class BillingApi:
    """Read-only Azure Resource Manager client.

    Every failure (auth, transport, HTTP status, empty or malformed body) comes
    back as None from fetch_json. Callers treat None as "field unknown".
    """

    def __init__(self, credential=None, session: requests.Session = None, timeout: float = 60):
        self.credential = credential if credential is not None else DefaultAzureCredential()
        self.session = session if session is not None else requests.Session()
        self.timeout = timeout
        self.calls = 0

    def _headers(self) -> dict:
        token = self.credential.get_token(ARM_SCOPE)
        return {'Authorization': f'Bearer {token.token}', 'Accept': 'application/json'}

    def fetch_json(self, url: str) -> Optional[dict]:
        self.calls += 1
        try:
            response = self.session.get(url, headers=self._headers(), timeout=self.timeout)
            response.raise_for_status()
            if not response.content:
                log.debug("Empty response body: %s", url)
                return None
            payload = response.json()
        except ClientAuthenticationError as e:
            log.debug("Authentication failed for %s: %s", url, e)
            return None
        except requests.RequestException as e:
            log.debug("Request failed for %s: %s", url, e)
            return None
        except ValueError as e:
            log.debug("Malformed JSON from %s: %s", url, e)
            return None

        if not isinstance(payload, dict):
            log.debug("Unexpected payload type %s from %s", type(payload).__name__, url)
            return None
        return payload

    def list_subscriptions(self, api_version: str) -> list[Subscription]:
        subscriptions = []
        url = f"{ARM_ENDPOINT}/subscriptions?api-version={api_version}"
        while url:
            page = self.fetch_json(url)
            if page is None:
                break
            for item in page.get('value') or []:
                if not isinstance(item, dict) or not item.get('subscriptionId'):
                    continue
                sub_id = item['subscriptionId']
                subscriptions.append(Subscription(id=sub_id, name=item.get('displayName') or sub_id))
            url = page.get('nextLink')
        return subscriptions


# ── Scope parsing ───────────────────────────────────────────────────────


def extract_billing_account_id(scope: Optional[str]) -> Optional[str]:
    """Return the segment after 'billingAccounts' in a billing scope path, or None."""
    if not isinstance(scope, str) or not scope:
        return None
    segments = scope.split('/')
    for i, segment in enumerate(segments):
        if segment == BILLING_ACCOUNT_SEGMENT:
            if i + 1 < len(segments) and segments[i + 1]:
                return segments[i + 1]
            return None
    return None


def is_csp_scope(scope: Optional[str]) -> bool:
    return isinstance(scope, str) and CSP_SCOPE_MARKER in scope


# ── Classification ──────────────────────────────────────────────────────


_MISSING = object()


class LookupCache:
    """Per-run memo keyed by billing account id.

    Failed lookups are stored as None and are not fetched again.
    """

    def __init__(self, name: str):
        self.name = name
        self._entries = {}
        self.hits = 0
        self.misses = 0

    def get_or_fetch(self, key: str, fetch: Callable[[], Optional[dict]]) -> Optional[dict]:
        value = self._entries.get(key, _MISSING)
        if value is not _MISSING:
            self.hits += 1
            log.debug("%s cache hit: %s", self.name, key)
            return value
        self.misses += 1
        value = fetch()
        self._entries[key] = value
        return value

    def __contains__(self, key) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)


@dataclass
class ClassificationRecord:
    subscription_name: str
    subscription_id: str
    offer_type: Optional[str] = None
    agreement_type: Optional[str] = None
    is_csp: bool = False
    csp_evidence: list[str] = field(default_factory=list)
    # None: no billing account to check. False: checked, no lots found.
    has_macc: Optional[bool] = None
    billing_account_id: Optional[str] = None
    billing_scope_id: Optional[str] = None

    def add_csp_evidence(self, evidence: str):
        self.is_csp = True
        if evidence not in self.csp_evidence:
            self.csp_evidence.append(evidence)


def _dig(payload, *keys):
    for key in keys:
        if not isinstance(payload, dict):
            return None
        payload = payload.get(key)
    return payload


def _dig_str(payload, *keys) -> Optional[str]:
    value = _dig(payload, *keys)
    return value if isinstance(value, str) and value else None


def _count(payload) -> int:
    items = _dig(payload, 'value')
    return len(items) if isinstance(items, list) else 0


class BillingClassifier:
    """Classifies subscriptions one at a time against the billing API.

    Billing account, customer and lot lookups are cached per billing account,
    so subscriptions sharing a parent account cost one call per endpoint.
    """

    def __init__(self, fetch_json: Callable[[str], Optional[dict]], api_versions: dict = None):
        self.fetch_json = fetch_json
        self.api_versions = {**DEFAULT_API_VERSIONS, **(api_versions or {})}
        self.accounts = LookupCache('billing account')
        self.customers = LookupCache('customers')
        self.lots = LookupCache('lots')

    def classify(self, subscriptions, progress: bool = True) -> list[ClassificationRecord]:
        records = []
        for sub in subscriptions:
            if progress:
                print(f"  Processing: {sub.name}")
            records.append(self.classify_subscription(sub))
        return records

    def classify_subscription(self, sub: Subscription) -> ClassificationRecord:
        record = ClassificationRecord(subscription_name=sub.name, subscription_id=sub.id)
        versions = self.api_versions

        detail = self.fetch_json(subscription_url(sub.id, versions['subscription']))
        if detail is None:
            return record

        record.billing_scope_id = _dig_str(detail, 'subscriptionPolicies', 'billingScopeId')
        record.offer_type = _dig_str(detail, 'subscriptionPolicies', 'quotaId')

        if is_csp_scope(record.billing_scope_id):
            record.add_csp_evidence(EVIDENCE_SCOPE)

        account_id = extract_billing_account_id(record.billing_scope_id)
        if account_id is None:
            return record
        record.billing_account_id = account_id

        account = self.accounts.get_or_fetch(
            account_id, lambda: self.fetch_json(billing_account_url(account_id, versions['billing']))
        )
        record.agreement_type = _dig_str(account, 'properties', 'agreementType')

        customers = self.customers.get_or_fetch(
            account_id, lambda: self.fetch_json(customers_url(account_id, versions['billing']))
        )
        if _count(customers) > 0:
            record.add_csp_evidence(EVIDENCE_CUSTOMERS)

        lots = self.lots.get_or_fetch(
            account_id, lambda: self.fetch_json(lots_url(account_id, versions['consumption']))
        )
        record.has_macc = _count(lots) > 0
        return record


# ── Aggregation & reporting ─────────────────────────────────────────────


def summarize(records: list[ClassificationRecord]) -> dict:
    by_type = Counter(r.agreement_type for r in records if r.agreement_type)
    return {
        'total': len(records),
        'by_agreement_type': dict(by_type),
        'csp_count': sum(1 for r in records if r.is_csp),
        'macc_count': sum(1 for r in records if r.has_macc is True),
        'unknown_agreement_count': sum(1 for r in records if not r.agreement_type),
    }


def group_by_billing_account(records: list[ClassificationRecord]) -> dict[str, dict]:
    """Group records by billing account id.

    Agreement type and MACC flag come from the first record seen for each
    account; later records only add to the subscription count.
    """
    groups = {}
    for r in records:
        if not r.billing_account_id:
            continue
        entry = groups.get(r.billing_account_id)
        if entry is None:
            groups[r.billing_account_id] = {
                'subscription_count': 1,
                'agreement_type': r.agreement_type,
                'has_macc': r.has_macc,
            }
        else:
            entry['subscription_count'] += 1
    return groups


def _sort_key(record: ClassificationRecord):
    return (
        record.agreement_type is not None,
        record.agreement_type or '',
        record.is_csp,
        record.subscription_name,
    )


def sort_records(records: list[ClassificationRecord]) -> list[ClassificationRecord]:
    return sorted(records, key=_sort_key)


def build_results_frame(records: list[ClassificationRecord]) -> pd.DataFrame:
    is_csp = np.array([r.is_csp for r in records], dtype=bool)
    macc_checked = np.array([r.has_macc is not None for r in records], dtype=bool)
    macc_found = np.array([r.has_macc is True for r in records], dtype=bool)

    return pd.DataFrame({
        'SubscriptionName': [r.subscription_name for r in records],
        'SubscriptionId': [r.subscription_id for r in records],
        'OfferType': [r.offer_type or '' for r in records],
        'AgreementType': [r.agreement_type or '' for r in records],
        'IsCSP': np.where(is_csp, 'True', 'False'),
        'CSPEvidence': ['; '.join(r.csp_evidence) for r in records],
        'HasMACC': np.where(macc_checked, np.where(macc_found, 'True', 'False'), ''),
        'BillingAccountId': [r.billing_account_id or '' for r in records],
        'BillingScopeId': [r.billing_scope_id or '' for r in records],
    }, columns=CSV_COLUMNS)


def write_csv(records: list[ClassificationRecord], path: Path):
    build_results_frame(records).to_csv(path, index=False, encoding='utf-8')


def _format_flag(value: Optional[bool]) -> str:
    if value is None:
        return 'Unknown'
    return 'True' if value else 'False'


def _summary_rows(summary: dict) -> list[tuple[str, int]]:
    by_type = summary['by_agreement_type']
    rows = [('Total subscriptions', summary['total'])]
    for agreement, label in AGREEMENT_LABELS.items():
        rows.append((label, by_type.get(agreement, 0)))
    for agreement in sorted(by_type):
        if agreement not in AGREEMENT_LABELS:
            rows.append((agreement, by_type[agreement]))
    rows.append(('CSP Detected', summary['csp_count']))
    rows.append(('Has MACC', summary['macc_count']))
    rows.append(('Unknown agreement', summary['unknown_agreement_count']))
    return rows


def write_workbook(records: list[ClassificationRecord], path: Path):
    results_df = build_results_frame(sort_records(records))
    summary = summarize(records)
    groups = group_by_billing_account(records)

    with pd.ExcelWriter(path, engine='openpyxl') as writer:
        results_df.to_excel(writer, sheet_name='All Subscriptions', index=False)

        rows = _summary_rows(summary)
        summary_data = {
            'Metric': [label for label, _ in rows],
            'Value': [f"{count:,}" for _, count in rows],
        }
        pd.DataFrame(summary_data).to_excel(writer, sheet_name='Summary', index=False)

        account_df = pd.DataFrame(
            [
                {
                    'BillingAccountId': account_id,
                    'SubscriptionCount': info['subscription_count'],
                    'AgreementType': info['agreement_type'] or '',
                    'HasMACC': _format_flag(info['has_macc']),
                }
                for account_id, info in groups.items()
            ],
            columns=['BillingAccountId', 'SubscriptionCount', 'AgreementType', 'HasMACC'],
        )
        account_df.to_excel(writer, sheet_name='By Billing Account', index=False)


def print_summary(records: list[ClassificationRecord], show_details: bool = True):
    print("\nSummary:")
    for label, count in _summary_rows(summarize(records)):
        print(f"  {label + ':':24s}{count:>6,}")

    if not show_details:
        return

    print("\nSubscriptions:")
    detail_df = build_results_frame(sort_records(records))[
        ['SubscriptionName', 'AgreementType', 'IsCSP', 'HasMACC', 'OfferType']
    ]
    if detail_df.empty:
        print("  (none)")
    else:
        print(detail_df.to_string(index=False))

    groups = group_by_billing_account(records)
    if groups:
        print("\nBilling accounts:")
    for account_id, info in groups.items():
        print(f"\n  {account_id}")
        print(f"    Subscriptions:   {info['subscription_count']}")
        print(f"    Agreement type:  {info['agreement_type'] or 'Unknown'}")
        print(f"    Has MACC:        {_format_flag(info['has_macc'])}")


# ── Entry point ─────────────────────────────────────────────────────────


def main(config: dict, api: BillingApi = None) -> list[ClassificationRecord]:
    paths = config['_resolved_paths']
    versions = config['api_versions']

    t_start = time.perf_counter()

    print("=" * 70)
    print("AZURE BILLING CLASSIFICATION")
    print("=" * 70)

    if api is None:
        api = BillingApi(timeout=config['http']['timeout'])

    print("\nListing subscriptions...")
    subscriptions = api.list_subscriptions(versions['subscription'])
    if not subscriptions:
        raise NoSubscriptionsError(
            "No subscriptions found. Check that the Azure credential is signed in and has access."
        )
    print(f"  Found {len(subscriptions)} subscription(s)")

    print("\nClassifying subscriptions...")
    classifier = BillingClassifier(api.fetch_json, versions)
    records = classifier.classify(subscriptions)

    paths['csv'].parent.mkdir(parents=True, exist_ok=True)
    write_csv(records, paths['csv'])
    if paths['xlsx']:
        paths['xlsx'].parent.mkdir(parents=True, exist_ok=True)
        write_workbook(records, paths['xlsx'])

    t_end = time.perf_counter()

    print(f"\n{'='*70}")
    print("CLASSIFICATION COMPLETE")
    print(f"{'='*70}")
    print(f"Results written to: {paths['csv']}")
    if paths['xlsx']:
        print(f"Workbook written to: {paths['xlsx']}")

    print_summary(records, config['display']['show_details'])

    cached = len(classifier.accounts)
    hits = classifier.accounts.hits + classifier.customers.hits + classifier.lots.hits
    print(f"\nBilling accounts looked up: {cached} ({hits} cached lookups reused)")
    print(f"Timing: total {t_end - t_start:.1f}s")
    return records


def parse_args(argv: list[str] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description='Azure Billing Classification CLI: detect EA/MCA agreements, CSP indicators and MACC'
    )
    parser.add_argument('output', nargs='?', default=None,
                        help=f'Output CSV path (default: {DEFAULT_OUTPUT})')
    parser.add_argument('--config', default=None, help='Path to config YAML')
    parser.add_argument('--xlsx', default=None, help='Also write an Excel workbook to this path')
    parser.add_argument('--subscription-api-version', default=None, help='Subscriptions API version')
    parser.add_argument('--billing-api-version', default=None, help='Microsoft.Billing API version')
    parser.add_argument('--consumption-api-version', default=None, help='Microsoft.Consumption API version')
    parser.add_argument('--details', action=argparse.BooleanOptionalAction, default=None,
                        help='Print the per-subscription table and billing account blocks (default: on)')
    parser.add_argument('--timeout', type=float, default=None, help='HTTP timeout in seconds')
    parser.add_argument('-v', '--verbose', action='store_true', help='Log failed API calls')
    return parser.parse_args(argv)


def run(argv: list[str] = None) -> int:
    if hasattr(sys.stdout, 'reconfigure'):
        sys.stdout.reconfigure(encoding='utf-8')
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format='%(levelname)s %(name)s: %(message)s',
    )

    try:
        config = load_config(
            args.config,
            output_override=args.output,
            xlsx_override=args.xlsx,
            api_version_overrides={
                'subscription': args.subscription_api_version,
                'billing': args.billing_api_version,
                'consumption': args.consumption_api_version,
            },
            show_details=args.details,
            timeout=args.timeout,
        )
        main(config)
    except (ConfigError, NoSubscriptionsError) as e:
        print(f"ERROR: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(run())
