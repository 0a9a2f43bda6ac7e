#!/usr/bin/env python3
"""
Command-line entry point for the KYC Case Pipeline

Owns database initialisation and shutdown and exposes the pipeline
operations for operators. Every command prints its result as JSON.

Usage:
    python cli.py init-db
    python cli.py create-user analyst@example.com --name "Ana Lyst"
    python cli.py create-case --owner 1 --company-name "Muster GmbH"
    python cli.py advance --owner 1 3 2 --status completed
    python cli.py run-check --owner 1 3 sanctions
    python cli.py overview --owner 1
"""

import argparse
import json
import logging
import sys
from typing import Any, Callable, Dict, List, Optional

from config_manager import ConfigManager, ConfigurationError
from database.connection import DatabaseSettings, close_db, init_db
from database.monitoring import configure_monitoring
from database.repositories import DuplicateEntityError, UserRepository
from log_utils import configure_logging
from pipeline.case_pipeline import CasePipelineService
from pipeline.company_registry import CompanyRegistryService
from pipeline.compliance_checks import ComplianceCheckService, EntityRef
from pipeline.dashboard import DashboardService
from pipeline.exceptions import KycError, NotFoundError, PersistenceError, ValidationError
from pipeline.serializers import case_to_dict, check_to_dict, company_to_dict

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_VALIDATION = 2
EXIT_NOT_FOUND = 3
EXIT_PERSISTENCE = 4
EXIT_CONFIG = 5


# ============================================
# COMMANDS
# ============================================

def cmd_init_db(args, provider, config) -> Dict[str, Any]:
    if args.reset:
        provider.drop_tables()
    provider.create_tables()
    return {"tables_created": True, "reset": args.reset, "health": provider.health_check().to_dict()}


def cmd_health(args, provider, config) -> Dict[str, Any]:
    return provider.health_check().to_dict()


def cmd_create_user(args, provider, config) -> Dict[str, Any]:
    with provider.session_scope() as session:
        try:
            user = UserRepository(session).create(
                email=args.email,
                credential_hash=args.credential_hash,
                display_name=args.name,
                organisation=args.organisation
            )
        except DuplicateEntityError as e:
            raise ValidationError(str(e), field="email", code="DUPLICATE_EMAIL") from e
        return {"id": user.id, "email": user.email, "display_name": user.display_name}


def cmd_record_login(args, provider, config) -> Dict[str, Any]:
    with provider.session_scope() as session:
        repo = UserRepository(session)
        user = repo.get_by_email(args.email)
        if user is None:
            raise NotFoundError("User", args.email)
        user = repo.record_login(user.id)
        return {"id": user.id, "email": user.email, "last_login_at": user.last_login_at.isoformat()}


def cmd_create_case(args, provider, config) -> Dict[str, Any]:
    try:
        customer_info = json.loads(args.customer_info) if args.customer_info else None
    except json.JSONDecodeError as e:
        raise ValidationError(f"customer-info is not valid JSON: {e}", field="customer_info") from e
    with provider.session_scope() as session:
        case = CasePipelineService(session, config).create_case(
            args.owner,
            company_id=args.company_id,
            company_name=args.company_name,
            customer_info=customer_info,
            notes=args.notes,
            risk_level=args.risk_level
        )
        return case_to_dict(case)


def cmd_advance(args, provider, config) -> Dict[str, Any]:
    with provider.session_scope() as session:
        case = CasePipelineService(session, config).advance_step(
            args.case_id, args.owner, args.step, new_status=args.status
        )
        return case_to_dict(case)


def cmd_set_status(args, provider, config) -> Dict[str, Any]:
    with provider.session_scope() as session:
        case = CasePipelineService(session, config).set_status(
            args.case_id, args.owner, args.status, reason=args.reason
        )
        return case_to_dict(case)


def cmd_show_case(args, provider, config) -> Dict[str, Any]:
    with provider.session_scope() as session:
        return CasePipelineService(session, config).get_case_detail(args.case_id, args.owner).to_dict()


def cmd_list_cases(args, provider, config) -> Dict[str, Any]:
    with provider.session_scope() as session:
        cases = CasePipelineService(session, config).list_cases(
            args.owner,
            status=args.status,
            risk_level=args.risk_level,
            limit=args.limit,
            offset=args.offset
        )
        return {"count": len(cases), "cases": [summary.to_dict() for summary in cases]}


def cmd_run_check(args, provider, config) -> Dict[str, Any]:
    entity_ref = EntityRef(kind="ubo", entity_id=args.ubo) if args.ubo else None
    with provider.session_scope() as session:
        check = ComplianceCheckService(session, config=config).run_check(
            args.case_id, args.owner, args.check_type, entity_ref=entity_ref
        )
        return check_to_dict(check)


def cmd_search_company(args, provider, config) -> Dict[str, Any]:
    if not args.save:
        candidates = CompanyRegistryService(config=config).search_external_registry(args.query)
        return {"results": [candidate.to_dict() for candidate in candidates]}

    with provider.session_scope() as session:
        service = CompanyRegistryService(session, config=config)
        candidates = service.search_external_registry(args.query)
        company = service.save_company(args.owner, candidates[0])
        return {
            "results": [candidate.to_dict() for candidate in candidates],
            "saved": company_to_dict(company),
        }


def cmd_overview(args, provider, config) -> Dict[str, Any]:
    with provider.session_scope() as session:
        return DashboardService(session, config).get_overview(args.owner).to_dict()


# ============================================
# ARGUMENT PARSING
# ============================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="KYC case pipeline")
    parser.add_argument("--config", help="Path to config.yaml")
    parser.add_argument("--database-url", help="SQLAlchemy URL, overrides config and environment")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")
    parser.add_argument("--no-log-file", action="store_true", help="Log to the console only")

    sub = parser.add_subparsers(dest="command", required=True)

    def command(name: str, handler: Callable, help_text: str, owner: bool = True) -> argparse.ArgumentParser:
        p = sub.add_parser(name, help=help_text)
        if owner:
            p.add_argument("--owner", type=int, required=True, help="Owning user id")
        p.set_defaults(handler=handler)
        return p

    p = command("init-db", cmd_init_db, "Create database tables", owner=False)
    p.add_argument("--reset", action="store_true", help="Drop all pipeline tables first (deletes all data)")

    command("health", cmd_health, "Check the database and pipeline tables", owner=False)

    p = command("create-user", cmd_create_user, "Create a user account", owner=False)
    p.add_argument("email")
    p.add_argument("--name")
    p.add_argument("--organisation")
    p.add_argument("--credential-hash", default="!", help="Stored credential hash ('!' disables login)")

    p = command("record-login", cmd_record_login, "Stamp a user's last login", owner=False)
    p.add_argument("email")

    p = command("create-case", cmd_create_case, "Create a KYC case")
    p.add_argument("--company-id", type=int)
    p.add_argument("--company-name")
    p.add_argument("--customer-info", help="JSON object")
    p.add_argument("--notes")
    p.add_argument("--risk-level")

    p = command("advance", cmd_advance, "Move a case to a pipeline stage")
    p.add_argument("case_id", type=int)
    p.add_argument("step", type=int)
    p.add_argument("--status", default="completed", help="Stage status")

    p = command("set-status", cmd_set_status, "Set the case status")
    p.add_argument("case_id", type=int)
    p.add_argument("status")
    p.add_argument("--reason")

    p = command("show-case", cmd_show_case, "Show a case with all linked records")
    p.add_argument("case_id", type=int)

    p = command("list-cases", cmd_list_cases, "List cases")
    p.add_argument("--status")
    p.add_argument("--risk-level")
    p.add_argument("--limit", type=int)
    p.add_argument("--offset", type=int, default=0)

    p = command("run-check", cmd_run_check, "Run a compliance check")
    p.add_argument("case_id", type=int)
    p.add_argument("check_type")
    p.add_argument("--ubo", type=int, help="Screen this UBO instead of the company")

    p = command("search-company", cmd_search_company, "Search the company registry", owner=False)
    p.add_argument("query")
    p.add_argument("--owner", type=int, help="Owning user id (required with --save)")
    p.add_argument("--save", action="store_true", help="Save the first result for --owner")

    command("overview", cmd_overview, "Dashboard overview")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = ConfigManager(args.config) if args.config else ConfigManager.get_instance()
    except ConfigurationError as e:
        print(json.dumps({"error": "CONFIGURATION_ERROR", "message": str(e)}), file=sys.stderr)
        return EXIT_CONFIG

    configure_logging(config.logging, enable_file=not args.no_log_file)
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)
    configure_monitoring(config.monitoring)

    if args.command == "search-company" and args.save and args.owner is None:
        parser.error("search-company --save requires --owner")

    settings = DatabaseSettings.from_config(config.database)
    if args.database_url:
        settings.url = args.database_url

    try:
        provider = init_db(settings=settings)
        result = args.handler(args, provider, config)
        print(json.dumps(result, indent=2, default=str, ensure_ascii=False))
        return EXIT_OK
    except ValidationError as e:
        print(json.dumps(e.to_dict(), ensure_ascii=False), file=sys.stderr)
        return EXIT_VALIDATION
    except NotFoundError as e:
        print(json.dumps({"error": e.code, "message": str(e)}), file=sys.stderr)
        return EXIT_NOT_FOUND
    except PersistenceError as e:
        logger.error(f"Command {args.command} failed: {e}")
        print(json.dumps({"error": e.code, "message": str(e), "retryable": e.retryable}), file=sys.stderr)
        return EXIT_PERSISTENCE
    except KycError as e:
        logger.error(f"Command {args.command} failed: {e}")
        print(json.dumps({"error": e.code, "message": str(e)}), file=sys.stderr)
        return EXIT_PERSISTENCE
    finally:
        close_db()


if __name__ == "__main__":
    sys.exit(main())
