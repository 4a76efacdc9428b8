import os
import sys
import json
import re
import asyncio
import logging
import logging.config
import argparse
import hmac
from dataclasses import asdict
from typing import Any, List, Optional

import yaml
from flask import Flask, request
from waitress import serve

from approval import ApprovalGate, ApprovalService
from arr_api import ArrClientPool, MetadataLookup, RadarrDispatcher, SonarrDispatcher, TmdbClient
from conditions import ConditionTreeEvaluator
from content_router import ContentRouter
from evaluators import BUILTIN_EVALUATORS, EvaluatorRegistry, EvaluatorServices
from router_types import ContentItem, InvalidConditionError, parse_condition
from stores import (
    MemoryApprovalStore,
    MemoryInstanceStore,
    MemoryQuotaService,
    MemoryRuleStore,
    MemoryUserStore,
    QUOTA_TYPES,
)

# =========================
# App and global constants
# =========================
app = Flask(__name__)

SCRIPT_DIR = os.path.dirname(os.path.abspath(__file__))
LOG_DIRECTORY = os.path.join(SCRIPT_DIR, 'logs')
os.makedirs(LOG_DIRECTORY, exist_ok=True)

LOG_FILE = os.path.join(LOG_DIRECTORY, 'routarr.log')
CONFIG_PATH = os.path.join(SCRIPT_DIR, 'config.yaml')

REQUIRED_KEYS = [
    'DRY_RUN',
    'RADARR_INSTANCES',
    'SONARR_INSTANCES',
]

# =========================
# Logging setup
# =========================
class Colors:
    OKBLUE = '\033[94m'
    OKCYAN = '\033[96m'
    ENDC = '\033[0m'

class ColoredFormatter(logging.Formatter):
    colon_pattern = re.compile(r'^(.*?):\s(.*)$')

    def format(self, record):
        base_message = super().format(record)
        if getattr(record, 'is_console', False):
            match = self.colon_pattern.match(base_message)
            if match:
                colored_label = f"{Colors.OKCYAN}{match.group(1)}{Colors.ENDC}"
                colored_value = f"{Colors.OKBLUE}{match.group(2)}{Colors.ENDC}"
                base_message = f"{colored_label}: {colored_value}"
        return base_message

class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        try:
            payload = {
                "ts": self.formatTime(record, self.datefmt),
                "lvl": record.levelname,
                "msg": record.getMessage(),
                "rid": getattr(record, 'request_id', ''),
                "cid": getattr(record, 'correlation_id', ''),
            }
            return json.dumps(payload, ensure_ascii=False)
        except Exception:
            return super().format(record)

class ConsoleFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.is_console = True
        return True

class ContextDefaultsFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, 'request_id'):
            record.request_id = ''
        if not hasattr(record, 'correlation_id'):
            record.correlation_id = ''
        return True

LOGGING_CONFIG = {
    'version': 1,
    'disable_existing_loggers': False,

    'formatters': {
        'colored':  {'()': f'{__name__}.ColoredFormatter',
                     'format': '%(asctime)s - %(levelname)s - %(message)s'},
        'json':     {'()': f'{__name__}.JsonFormatter'}
    },

    'filters': {
        'console_filter': {'()': f'{__name__}.ConsoleFilter'},
        'context_defaults': {'()': f'{__name__}.ContextDefaultsFilter'},
    },

    'handlers': {
        'console': {
            'level': 'DEBUG', 'class': 'logging.StreamHandler',
            'formatter': 'colored',
            'filters': ['console_filter', 'context_defaults']
        },
        'file': {
            'level': 'DEBUG', 'class': 'logging.FileHandler',
            'filename': LOG_FILE, 'formatter': 'json', 'encoding': 'utf-8',
            'filters': ['context_defaults']
        }
    },

    'root': {
        'level': os.environ.get('LOG_LEVEL', 'INFO'),
        'handlers': ['console', 'file']
    }
}

def setup_logging():
    logging.config.dictConfig(LOGGING_CONFIG)

# =========================
# Config loading and checks
# =========================
def load_config(path: str) -> dict:
    try:
        with open(path, 'r', encoding='utf-8') as f:
            config = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logging.critical(f"Configuration file not found at {path}.")
        sys.exit(1)
    except yaml.YAMLError as e:
        logging.critical(f"Error parsing configuration: {e}")
        sys.exit(1)

    missing = [k for k in REQUIRED_KEYS if k not in config]
    if missing:
        logging.critical(f"Missing required configuration keys: {', '.join(missing)}")
        sys.exit(1)

    if not isinstance(config.get('DRY_RUN'), bool):
        logging.critical("DRY_RUN must be a boolean.")
        sys.exit(1)

    return config

"""
Runtime configuration (initialised in init_runtime()).
These globals are populated when the server starts or when commands run.
"""
DRY_RUN: bool = True
RADARR_INSTANCES: List[dict] = []
SONARR_INSTANCES: List[dict] = []
ROUTER_RULES: List[dict] = []
QUOTAS: List[dict] = []

WEBHOOK_TOKEN: Optional[str] = None
ENFORCE_WEBHOOK_TOKEN: bool = False
APPROVAL_FAIL_OPEN: bool = True
RECORD_AUTO_APPROVALS: bool = True

SERVER_HOST: str = '0.0.0.0'
SERVER_PORT: int = 12220
SERVER_THREADS: int = 15
SERVER_CONNECTION_LIMIT: int = 500

ROUTER: Optional[ContentRouter] = None
APPROVALS: Optional[ApprovalService] = None

# =========================
# Validation
# =========================
def validate_instances(instances: Any, backend: str) -> bool:
    if not isinstance(instances, list):
        logging.error(f"{backend} instances must be a list.")
        return False
    valid = True
    seen = set()
    defaults = 0
    for inst in instances:
        if not isinstance(inst, dict):
            logging.error(f"{backend} instance entries must be mappings.")
            valid = False
            continue
        inst_id = inst.get('id')
        if not isinstance(inst_id, int) or isinstance(inst_id, bool):
            logging.error(f"{backend} instance '{inst.get('name')}' missing integer id.")
            valid = False
        elif inst_id in seen:
            logging.error(f"Duplicate {backend} instance id {inst_id}.")
            valid = False
        else:
            seen.add(inst_id)
        if not inst.get('base_url'):
            logging.error(f"{backend} instance '{inst.get('name', inst_id)}' missing base_url.")
            valid = False
        if inst.get('is_default'):
            defaults += 1
    if defaults > 1:
        logging.error(f"More than one default {backend} instance configured.")
        valid = False
    elif instances and defaults == 0:
        logging.warning(f"No default {backend} instance configured; unmatched content will not be routed.")
    return valid


def validate_rules(rules: Any, radarr_ids: set, sonarr_ids: set) -> bool:
    if rules is None:
        return True
    if not isinstance(rules, list):
        logging.error("ROUTER_RULES must be a list.")
        return False
    valid = True
    seen = set()
    for rule in rules:
        if not isinstance(rule, dict):
            logging.error("Router rule entries must be mappings.")
            valid = False
            continue
        name = rule.get('name', rule.get('id'))
        rule_id = rule.get('id')
        if not isinstance(rule_id, int) or isinstance(rule_id, bool):
            logging.error(f"Rule '{name}' missing integer id.")
            valid = False
        elif rule_id in seen:
            logging.error(f"Duplicate rule id {rule_id}.")
            valid = False
        else:
            seen.add(rule_id)
        target_type = rule.get('target_type')
        if target_type not in ('radarr', 'sonarr'):
            logging.error(f"Rule '{name}' target_type must be 'radarr' or 'sonarr'.")
            valid = False
        else:
            ids = radarr_ids if target_type == 'radarr' else sonarr_ids
            if rule.get('target_instance_id') not in ids:
                logging.error(f"Rule '{name}' targets unknown {target_type} instance {rule.get('target_instance_id')}.")
                valid = False
        try:
            parse_condition(rule.get('condition'))
        except InvalidConditionError as e:
            logging.error(f"Rule '{name}' has an invalid condition: {e}")
            valid = False
    return valid


def validate_quotas(quotas: Any) -> bool:
    if quotas is None:
        return True
    if not isinstance(quotas, list):
        logging.error("QUOTAS must be a list.")
        return False
    valid = True
    for quota in quotas:
        if not isinstance(quota, dict) or not isinstance(quota.get('user_id'), int):
            logging.error("Quota entries must be mappings with an integer user_id.")
            valid = False
            continue
        if quota.get('quota_type', 'monthly') not in QUOTA_TYPES:
            logging.error(f"Quota for user {quota['user_id']} has unknown quota_type '{quota.get('quota_type')}'.")
            valid = False
    return valid


def validate_configuration():
    radarr_ok = validate_instances(RADARR_INSTANCES, 'Radarr')
    sonarr_ok = validate_instances(SONARR_INSTANCES, 'Sonarr')
    radarr_ids = {i.get('id') for i in RADARR_INSTANCES if isinstance(i, dict)} if radarr_ok else set()
    sonarr_ids = {i.get('id') for i in SONARR_INSTANCES if isinstance(i, dict)} if sonarr_ok else set()
    rules_ok = validate_rules(ROUTER_RULES, radarr_ids, sonarr_ids)
    quotas_ok = validate_quotas(QUOTAS)
    if not (radarr_ok and sonarr_ok and rules_ok and quotas_ok):
        logging.critical("Configuration validation failed.")
        sys.exit(1)
    logging.info("Configuration loaded and validated successfully.")

# =========================
# Wiring
# =========================
def build_router(cfg: dict, session=None):
    """Assemble the routing engine and approval service from a loaded config."""
    instance_store = MemoryInstanceStore(cfg.get('RADARR_INSTANCES'), cfg.get('SONARR_INSTANCES'))
    rule_store = MemoryRuleStore(cfg.get('ROUTER_RULES'))
    user_store = MemoryUserStore(cfg.get('USERS'))
    quota_service = MemoryQuotaService(cfg.get('QUOTAS'))
    acfg = cfg.get('APPROVAL') or {}

    services = EvaluatorServices(rule_store=rule_store)
    registry = EvaluatorRegistry.load(BUILTIN_EVALUATORS, services)
    conditions = ConditionTreeEvaluator(registry)
    services.conditions = conditions

    pool = ArrClientPool(instance_store, session)
    dry_run = bool(cfg.get('DRY_RUN', True))
    dispatchers = {
        'movie': RadarrDispatcher(pool, dry_run),
        'show': SonarrDispatcher(pool, dry_run),
    }
    tcfg = cfg.get('TMDB') or {}
    tmdb = None
    if tcfg.get('ACCESS_TOKEN'):
        tmdb = TmdbClient(tcfg['ACCESS_TOKEN'], session=pool.session, region=tcfg.get('REGION') or 'US')
    approvals = ApprovalService(MemoryApprovalStore(), instance_store, dispatchers, quota_service)
    router = ContentRouter(
        registry=registry,
        conditions=conditions,
        rule_store=rule_store,
        instance_store=instance_store,
        approval_gate=ApprovalGate(user_store, rule_store, quota_service, conditions),
        approval_service=approvals,
        quota_service=quota_service,
        dispatchers=dispatchers,
        metadata_lookup=MetadataLookup(pool, tmdb),
        fail_open=bool(acfg.get('FAIL_OPEN', True)),
        record_auto_approvals=bool(acfg.get('RECORD_AUTO_APPROVALS', True)),
    )
    return router, approvals

# =========================
# Flask routes
# =========================
def _authorized() -> bool:
    if not ENFORCE_WEBHOOK_TOKEN:
        return True
    provided = (request.headers.get('X-Webhook-Token', '') or '').strip()
    if not provided or not hmac.compare_digest(str(provided), str(WEBHOOK_TOKEN)):
        logging.warning(f"Unauthorized request to {request.path}: missing or invalid token")
        return False
    return True


def _optional_int(value) -> Optional[int]:
    if value is None or value == '':
        return None
    return int(value)


@app.route('/health', methods=['GET'])
def health():
    return {'ok': True}, 200

@app.route('/route', methods=['POST'])
def route():
    if not _authorized():
        return ('Unauthorized', 401)
    data = request.get_json(force=True, silent=True)
    if not isinstance(data, dict):
        logging.error("Invalid JSON payload")
        return ('Bad Request', 400)

    try:
        item = ContentItem.from_dict(data.get('item') or data)
        key = str(data.get('key') or item.guids[0])
        user_id = _optional_int(data.get('userId'))
        sync_target = _optional_int(data.get('syncTargetInstanceId'))
        forced = _optional_int(data.get('forcedInstanceId'))
    except (TypeError, ValueError) as e:
        logging.error(f"Invalid routing payload: {e}")
        return {'error': str(e)}, 400

    try:
        routed = asyncio.run(ROUTER.route_content(
            item, key,
            user_id=user_id,
            user_name=data.get('userName'),
            syncing=bool(data.get('syncing', False)),
            sync_target_instance_id=sync_target,
            forced_instance_id=forced,
        ))
    except Exception as e:
        logging.exception(f"Routing failed for \"{item.title}\"")
        return {'error': str(e)}, 502
    return {'routedInstances': routed}, 200

@app.route('/evaluators', methods=['GET'])
def evaluators():
    return {'evaluators': ROUTER.get_evaluators_metadata()}, 200

@app.route('/approvals', methods=['GET'])
def approvals():
    if not _authorized():
        return ('Unauthorized', 401)
    status = request.args.get('status')
    requests_ = asyncio.run(APPROVALS.list_requests(status))
    return {'approvals': [asdict(r) for r in requests_]}, 200

@app.route('/approvals/<int:request_id>/approve', methods=['POST'])
def approve(request_id: int):
    if not _authorized():
        return ('Unauthorized', 401)
    data = request.get_json(force=True, silent=True) or {}
    approved, error = asyncio.run(APPROVALS.approve(
        request_id, _optional_int(data.get('approvedBy')), data.get('notes')))
    if approved is None:
        return {'error': error}, 404
    return {'approval': asdict(approved), 'processed': error is None, 'error': error}, 200

@app.route('/approvals/<int:request_id>/reject', methods=['POST'])
def reject(request_id: int):
    if not _authorized():
        return ('Unauthorized', 401)
    data = request.get_json(force=True, silent=True) or {}
    rejected = asyncio.run(APPROVALS.reject(
        request_id, _optional_int(data.get('rejectedBy')), data.get('notes')))
    if rejected is None:
        return {'error': f"Request {request_id} not found"}, 404
    return {'approval': asdict(rejected)}, 200

# =========================
# Main
# =========================
def init_runtime(cfg_path: str = CONFIG_PATH) -> dict:
    """Load configuration and initialise globals/services."""
    global DRY_RUN, RADARR_INSTANCES, SONARR_INSTANCES, ROUTER_RULES, QUOTAS
    global WEBHOOK_TOKEN, ENFORCE_WEBHOOK_TOKEN, APPROVAL_FAIL_OPEN, RECORD_AUTO_APPROVALS
    global SERVER_HOST, SERVER_PORT, SERVER_THREADS, SERVER_CONNECTION_LIMIT
    global ROUTER, APPROVALS

    cfg = load_config(cfg_path)

    DRY_RUN = bool(cfg['DRY_RUN'])
    RADARR_INSTANCES = cfg['RADARR_INSTANCES'] or []
    SONARR_INSTANCES = cfg['SONARR_INSTANCES'] or []
    ROUTER_RULES = cfg.get('ROUTER_RULES') or []
    QUOTAS = cfg.get('QUOTAS') or []

    # Webhook
    wcfg = cfg.get('WEBHOOK') or {}
    WEBHOOK_TOKEN = wcfg.get('TOKEN') if isinstance(wcfg, dict) else None
    ENFORCE_WEBHOOK_TOKEN = bool(WEBHOOK_TOKEN)

    # Approvals
    acfg = cfg.get('APPROVAL') or {}
    APPROVAL_FAIL_OPEN = bool(acfg.get('FAIL_OPEN', True))
    RECORD_AUTO_APPROVALS = bool(acfg.get('RECORD_AUTO_APPROVALS', True))

    # Server
    scfg = cfg.get('SERVER') or {}
    SERVER_HOST = scfg.get('HOST', '0.0.0.0')
    SERVER_PORT = int(scfg.get('PORT', 12220))
    SERVER_THREADS = int(scfg.get('THREADS', 15))
    SERVER_CONNECTION_LIMIT = int(scfg.get('CONNECTION_LIMIT', 500))

    return cfg


def parse_cli_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog='routarr', description='Content router for Radarr/Sonarr instances')
    parser.add_argument('-c', '--config', default=CONFIG_PATH, help='Path to config.yaml')
    parser.add_argument('--log-level', default=None, help='Override LOG_LEVEL (DEBUG, INFO, ...)')
    parser.add_argument('--log-file', default=None, help='Path of the JSON log file')
    sub = parser.add_subparsers(dest='cmd')

    p_gen = sub.add_parser('gen-token', help='Generate a webhook token')
    p_gen.add_argument('--size', type=int, default=32, help='Token size for secrets.token_urlsafe')

    sub.add_parser('list-evaluators', help='List the built-in routing evaluators in priority order')
    sub.add_parser('check-config', help='Validate the configuration file and exit')
    sub.add_parser('serve', help='Start the routing server (default)')

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_cli_args(argv)
    if args.log_level:
        LOGGING_CONFIG['root']['level'] = args.log_level.upper()
    if args.log_file:
        LOGGING_CONFIG['handlers']['file']['filename'] = args.log_file
    setup_logging()  # Ensure logs work for early failures/CLI

    global ROUTER, APPROVALS

    if args.cmd == 'gen-token':
        import secrets
        print(secrets.token_urlsafe(args.size))
        return 0

    if args.cmd == 'list-evaluators':
        registry = EvaluatorRegistry.load(BUILTIN_EVALUATORS, EvaluatorServices(rule_store=MemoryRuleStore()))
        for entry in registry.metadata():
            fields = ', '.join(f['name'] for f in entry['supportedFields'])
            print(f"{entry['priority']}\t{entry['name']}\t[{fields}]")
        return 0

    try:
        cfg = init_runtime(args.config)
        validate_configuration()
        if args.cmd == 'check-config':
            print("Configuration OK")
            return 0

        ROUTER, APPROVALS = build_router(cfg)
        if DRY_RUN:
            logging.warning("DRY_RUN enabled: content will not be added to any instance")
        logging.info(f"Configuration valid. Starting server on {SERVER_HOST}:{SERVER_PORT}")
        serve(
            app,
            host=SERVER_HOST,
            port=SERVER_PORT,
            threads=SERVER_THREADS,
            connection_limit=SERVER_CONNECTION_LIMIT,
        )
    except KeyboardInterrupt:
        return 130
    except SystemExit as e:
        return int(e.code or 1)
    except Exception:
        logging.exception("Fatal error starting server")
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
