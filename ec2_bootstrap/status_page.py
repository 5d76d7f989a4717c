#!/usr/bin/env python3
"""
Apache status page for an EC2 instance.

Installs httpd, reads the instance id, private IP and availability zone from
the instance metadata service (IMDSv2) and renders them into index.html.

Use:
  Dry run:
    sudo ec2-status-page

  From user data:
    ec2-status-page --execute --yes
"""

from __future__ import annotations
import argparse
import datetime
import html
from pathlib import Path
from typing import Dict, Optional

from ec2_bootstrap.log import banner, debug, info, set_verbose, success, warning
from ec2_bootstrap.system import atomic_write, http_get, run_cmd, run_main

METADATA_URL = "http://169.254.169.254/latest"
TOKEN_TTL = 21600
METADATA_TIMEOUT = 2

# fact key -> (label, meta-data path)
FACTS = {
    "instance_id": ("Instance ID", "instance-id"),
    "private_ip": ("Private IP", "local-ipv4"),
    "availability_zone": ("Availability Zone", "placement/availability-zone"),
}


def get_token(cfg: Dict) -> str:
    """Request an IMDSv2 session token valid for cfg['token_ttl'] seconds."""
    return http_get(
        f"{cfg['metadata_url']}/api/token",
        headers={"X-aws-ec2-metadata-token-ttl-seconds": str(cfg["token_ttl"])},
        method="PUT",
        timeout=METADATA_TIMEOUT,
    ).strip()


def fetch_metadata(cfg: Dict, token: Optional[str]) -> Dict[str, str]:
    """
    Read every fact in FACTS with the session token.

    A failed read leaves the fact empty and logs a warning, unless
    cfg['strict_metadata'] is set, in which case the error propagates.
    """
    headers = {"X-aws-ec2-metadata-token": token} if token else {}
    facts = {}
    for key, (label, path) in FACTS.items():
        try:
            facts[key] = http_get(f"{cfg['metadata_url']}/meta-data/{path}",
                                  headers=headers, timeout=METADATA_TIMEOUT).strip()
        except RuntimeError as e:
            if cfg["strict_metadata"]:
                raise
            warning(f"Could not read {label} from metadata service", error=str(e))
            facts[key] = ""
        debug("Metadata fact", key=key, value=facts[key])
    return facts


def render_status_page(facts: Dict[str, str], generated_at: str) -> str:
    rows = "\n".join(
        f"        <p><strong>{label}:</strong> {html.escape(facts.get(key, ''))}</p>"
        for key, (label, _) in FACTS.items()
    )
    return f"""<html>
<head>
    <title>EC2 Instance Details</title>
    <style>
        body {{ font-family: Arial, sans-serif; margin: 40px; }}
        .info {{ background-color: #f0f0f0; padding: 20px; border-radius: 5px; }}
    </style>
</head>
<body>
    <h1>Hello from EC2 Instance!</h1>
    <div class="info">
        <h2>Instance Details:</h2>
{rows}
        <p><strong>Timestamp:</strong> {html.escape(generated_at)}</p>
    </div>
</body>
</html>
"""


def generated_timestamp() -> str:
    # same shape as date(1)
    return datetime.datetime.now().astimezone().strftime("%a %b %d %H:%M:%S %Z %Y")


# ---------------------------
# Step functions
# ---------------------------

def step_install_httpd(cfg: Dict):
    run_cmd("dnf update -y", dry_run=cfg["dry_run"])
    run_cmd(f"dnf install -y {cfg['web_package']}", dry_run=cfg["dry_run"])
    success("Apache installed")


def step_write_page(cfg: Dict):
    if cfg["dry_run"]:
        info("Dry-run mode: rendering page with placeholder metadata")
        facts = {key: f"<{key}>" for key in FACTS}
    else:
        try:
            token = get_token(cfg)
        except RuntimeError as e:
            if cfg["strict_metadata"]:
                raise
            warning("Could not obtain metadata token", error=str(e))
            token = None
        facts = fetch_metadata(cfg, token)

    page = render_status_page(facts, generated_timestamp())
    atomic_write(Path(cfg["doc_root"]) / "index.html", page, dry_run=cfg["dry_run"])
    success("Status page written", **facts)


def step_start_httpd(cfg: Dict):
    run_cmd(f"systemctl enable {cfg['web_service']}", dry_run=cfg["dry_run"])
    run_cmd(f"systemctl start {cfg['web_service']}", dry_run=cfg["dry_run"])
    success(f"{cfg['web_service']} enabled and running")


STEPS = [
    ("Install Apache", step_install_httpd, True),
    ("Render instance status page", step_write_page, True),
    ("Enable and start Apache", step_start_httpd, True),
]


def show_summary(cfg: Dict):
    banner("Status page summary", [
        f"Mode: {'DRY-RUN (no changes)' if cfg['dry_run'] else 'EXECUTE'}",
        f"Page: {Path(cfg['doc_root']) / 'index.html'}",
        f"Service: {cfg['web_service']}",
    ])


# ---------------------------
# Main runner
# ---------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Render an EC2 instance status page served by Apache")
    parser.add_argument("--doc-root", default="/var/www/html", help="Apache document root (default /var/www/html)")
    parser.add_argument("--metadata-url", default=METADATA_URL, help=f"Metadata service base URL (default {METADATA_URL})")
    parser.add_argument("--token-ttl", type=int, default=TOKEN_TTL, help=f"Metadata token TTL in seconds (default {TOKEN_TTL})")
    parser.add_argument("--strict-metadata", action="store_true", help="Fail instead of rendering empty values when metadata is unavailable")
    mode_group = parser.add_mutually_exclusive_group()
    mode_group.add_argument("--dry-run", dest="dry_run", action="store_true", default=True, help="Show what would be done (default)")
    mode_group.add_argument("--execute", dest="dry_run", action="store_false", help="Actually provision the host")
    parser.add_argument("-y", "--yes", dest="assume_yes", action="store_true", help="Do not ask for confirmation")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose debug logging")
    return parser


def build_config(args: argparse.Namespace) -> Dict:
    return {
        "doc_root": args.doc_root,
        "metadata_url": args.metadata_url.rstrip("/"),
        "token_ttl": args.token_ttl,
        "strict_metadata": args.strict_metadata,
        "web_package": "httpd",
        "web_service": "httpd",
        "dry_run": args.dry_run,
        "assume_yes": args.assume_yes,
    }


def main(argv=None):
    args = build_parser().parse_args(argv)
    set_verbose(args.verbose)
    cfg = build_config(args)
    debug("Configuration prepared", **cfg)
    run_main(cfg, STEPS, show_summary)


if __name__ == "__main__":
    main()
