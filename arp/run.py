"""
AutoReach - CLI Runner

Usage:
  python -m arp.run \
    --input input_urls.txt \
    --config config/example.yaml \
    --out ./out

Dry run (validate only):
  python -m arp.run --input input_urls.txt --config config/example.yaml --out ./out --dry-run

HTTP surface:
  python -m arp.run --config config/example.yaml --serve [--host 127.0.0.1 --port 8765]

Exit codes:
  0 - success
  1 - config error (file missing, invalid YAML or invalid values)
  2 - input error (input file missing)
  3 - processing error (runtime failures)
"""
from __future__ import annotations

import argparse
import json
import logging
import platform
import sys
import time
from pathlib import Path
from typing import List, Optional

import psutil

from autoreach.config import EngineConfig, load_config
from autoreach.engine import Engine, build_engine
from autoreach.errors import ConfigError, PolicyRejection, ResourceExhaustion
from autoreach.ops_logger import run_record
from autoreach.pipeline.orchestrator import AUTOMATION_ACTION, READ_PERMISSIONS, SUBMIT_PERMISSIONS
from autoreach.policy.origin import format_origin, parse_origin
from autoreach.schemas import AutomationRequest, AutomationResult, AutomationStatus

logger = logging.getLogger("arp.run")

CLI_USER = "cli-operator"


def validate_input(input_path: Path) -> None:
    if not input_path.exists() or not input_path.is_file():
        print(f"Input error: file not found: {input_path}", file=sys.stderr)
        sys.exit(2)


def validate_config(config_path: Path) -> EngineConfig:
    try:
        return load_config(config_path)
    except ConfigError as e:
        print(f"Config error: {e}", file=sys.stderr)
        sys.exit(1)


def ensure_out_dir(out_dir: Path) -> None:
    try:
        out_dir.mkdir(parents=True, exist_ok=True)
        test_file = out_dir / ".write_test"
        test_file.write_text("ok", encoding="utf-8")
        test_file.unlink(missing_ok=True)
    except OSError as e:
        print(f"Output error: cannot write to {out_dir}: {e}", file=sys.stderr)
        sys.exit(3)


def read_input_urls(input_path: Path) -> List[str]:
    urls: List[str] = []
    for line in input_path.read_text(encoding="utf-8").splitlines():
        s = line.strip()
        if not s or s.startswith("#"):
            continue
        # bare domains get https://
        if s.startswith("http://") or s.startswith("https://"):
            urls.append(s)
        elif "." in s:
            urls.append(f"https://{s}")
        else:
            print(f"  ⚠️  Ignoring malformed input line: {s}", file=sys.stderr)
    return urls


def operator_origin(config: EngineConfig, explicit: Optional[str]) -> str:
    """The origin the CLI presents: --origin, else the first exact allow-list entry."""
    if explicit:
        return explicit
    for entry in config.origin.allowed_origins:
        if "*" in entry:
            continue
        try:
            return format_origin(*parse_origin(entry))
        except ValueError:
            continue
    return ""


def grant_operator_consent(engine: Engine, user_id: str, origin: str, auto_submit: bool) -> str:
    """Create and immediately grant the operator's own consent for this batch."""
    normalized = engine.origins.require(origin, "arp-cli")
    permissions = SUBMIT_PERMISSIONS if auto_submit else READ_PERMISSIONS
    request = engine.consent.create_consent_request(
        user_id, normalized, AUTOMATION_ACTION, {"client_id": "arp-cli", "requested_permissions": list(permissions)}
    )
    grant = engine.consent.grant_consent(request.id, permissions)
    return grant.id


def serve(config: EngineConfig, host: Optional[str], port: Optional[int]) -> int:
    import uvicorn

    from autoreach.api.server import create_app

    engine = build_engine(config)
    try:
        app = create_app(engine)
        uvicorn.run(app, host=host or config.server.host, port=port or config.server.port)
    finally:
        engine.shutdown()
    return 0


def resource_usage() -> dict:
    p = psutil.Process()
    with p.oneshot():
        return {
            "rss_mb": round(p.memory_info().rss / (1024 * 1024), 1),
            "cpu_pct": round(p.cpu_percent(interval=None), 1),
        }


def main(argv: list[str] | None = None) -> int:
    if sys.version_info < (3, 11):
        cur = f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}"
        print(f"Python 3.11+ required. Current: {cur}.", file=sys.stderr)
        return 1

    parser = argparse.ArgumentParser(prog="arp.run", description="AutoReach contact automation runner")
    parser.add_argument("--input", "-i", help="Path to URLs file (one per line)")
    parser.add_argument("--config", "-c", required=True, help="Path to YAML config file")
    parser.add_argument("--out", "-o", help="Output directory")
    parser.add_argument("--dry-run", action="store_true", help="Validate inputs/config and exit")
    parser.add_argument("--subject", default="", help="Organization name the target sites belong to")
    parser.add_argument("--user", default=CLI_USER, help=f"User id the runs are attributed to (default: {CLI_USER})")
    parser.add_argument("--origin", default=None, help="Origin to present (default: first allow-listed origin)")
    parser.add_argument("--auto-submit", action="store_true", help="Fill and submit the detected contact form")
    parser.add_argument("--serve", action="store_true", help="Start the HTTP surface instead of a batch run")
    parser.add_argument("--host", default=None, help="HTTP bind host (default: server.host from config)")
    parser.add_argument("--port", type=int, default=None, help="HTTP bind port (default: server.port from config)")
    parser.add_argument("--ops-log", default=None, help="Path to ops JSONL log file (default: <out>/ops.log)")
    parser.add_argument("--ops-stdout", action="store_true", help="Also mirror ops JSON to stdout")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    config = validate_config(Path(args.config))
    if args.ops_log or args.ops_stdout:
        config.ops.ops_log = args.ops_log or config.ops.ops_log
        config.ops.ops_stdout = config.ops.ops_stdout or args.ops_stdout

    if args.serve:
        return serve(config, args.host, args.port)

    if not args.input or not args.out:
        print("Input error: --input and --out are required for batch runs", file=sys.stderr)
        return 2
    input_path = Path(args.input)
    out_dir = Path(args.out)
    validate_input(input_path)
    ensure_out_dir(out_dir)
    urls = read_input_urls(input_path)

    if args.dry_run:
        print("✅ Dry-run validation passed")
        print(f" - Input file: {input_path}")
        print(f" - Config: {args.config}")
        print(f" - Output dir: {out_dir}")
        print(f" - URLs to process: {len(urls)}")
        return 0

    if not config.ops.ops_log:
        config.ops.ops_log = str(out_dir / "ops.log")

    engine = build_engine(config)
    results: List[AutomationResult] = []
    proc_start = time.perf_counter()
    try:
        try:
            grant_id = grant_operator_consent(engine, args.user, operator_origin(config, args.origin), args.auto_submit)
        except PolicyRejection as e:
            print(f"Policy error: {e}", file=sys.stderr)
            return 3

        for url in urls:
            print(f"➡️  Processing: {url}")
            request = AutomationRequest(
                url=url,
                user_id=args.user,
                origin=operator_origin(config, args.origin),
                grant_id=grant_id,
                subject_name=args.subject,
                auto_submit=args.auto_submit,
            )
            try:
                result = engine.orchestrator.run(request)
            except (PolicyRejection, ResourceExhaustion) as e:
                print(f"  ⚠️  Skipped: {url} ({e})")
                continue
            results.append(result)
            if engine.ops is not None:
                engine.ops.emit(run_record(result, user_id=args.user, pool=engine.browsers.get_stats()))
            if result.status == AutomationStatus.COMPLETED:
                found = result.extracted
                print(
                    f"  ✅ Contact page: {result.contact_page_url}"
                    + (f" ({len(found.emails)} emails, {len(found.phones)} phones)" if found else "")
                )
            elif result.status == AutomationStatus.NO_CONTACT_PAGE:
                print(f"  ℹ️  No contact page found on {url}")
            else:
                print(f"  ⚠️  Failed: {url} ({result.error})")

        results_path = out_dir / "results.json"
        try:
            results_path.write_text(
                json.dumps([r.model_dump(mode="json") for r in results], indent=2, ensure_ascii=False) + "\n",
                encoding="utf-8",
            )
        except OSError as e:
            print(f"Export error: {e}", file=sys.stderr)
            return 3
        print(f"💾 JSON: {results_path}")

        by_status = {s.value: sum(1 for r in results if r.status == s) for s in AutomationStatus}
        if engine.ops is not None:
            engine.ops.emit({
                "arp_ops": 1,
                "summary": True,
                "processed_urls": len(urls),
                "results": by_status,
                "durations": {"wall_s": round(max(0.0, time.perf_counter() - proc_start), 2)},
                "resources": resource_usage(),
                "python": f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}",
                "host": {"platform": platform.system(), "release": platform.release(), "machine": platform.machine()},
            })
    finally:
        engine.shutdown()

    print("🏁 Done.")
    print(f"   Processed URLs: {len(urls)}")
    print(f"   Contact pages found: {by_status[AutomationStatus.COMPLETED.value]}")
    if urls and by_status[AutomationStatus.FAILED.value] + (len(urls) - len(results)) == len(urls):
        print("Every URL failed.", file=sys.stderr)
        return 3
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
