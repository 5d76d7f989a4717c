#!/usr/bin/env python3
"""
Apache + PHP-FPM + WordPress installer for Amazon Linux 2023.

Connects WordPress to an existing RDS MySQL/Aurora database and configures
it to run behind a load balancer, so the same user data can be used by
every instance of an Auto Scaling Group.

Features:
 - Dry-run (default) and execute modes
 - Each step is either fatal or logged-and-continued; service start failures only warn
 - Single retry when php-fpm is missing after the package install
 - Fresh secret keys from the WordPress API on every run
 - Idempotent php-fpm pool patching
 - PHP smoke test against localhost, removed afterwards

Use:
  Dry run (review actions):
    sudo ec2-wordpress --db-host mydb.xxxx.us-east-1.rds.amazonaws.com

  Execute (user data):
    ec2-wordpress --execute --yes --db-pass 's3cret'
"""

from __future__ import annotations
import argparse
import re
from pathlib import Path
from typing import Dict, List, Mapping

from ec2_bootstrap.log import banner, debug, dry_run_print, error, info, set_verbose, success, warning
from ec2_bootstrap.system import (
    atomic_write, download_and_extract, http_get, remove_path, run_cmd, run_main, tail,
)

# Placeholder database settings; override on the command line.
DB_DEFAULTS = {
    "db_name": "wordpress",
    "db_user": "admin",
    "db_pass": "password",
    "db_host": "mywpinstance.cvmc84moy7kl.us-east-1.rds.amazonaws.com",
}

PACKAGES = ["httpd", "php", "php-fpm", "php-mysqlnd", "php-json", "php-gd", "php-mbstring", "php-xml", "php-intl"]
ARCHIVE_URL = "https://wordpress.org/latest.tar.gz"
SALT_URL = "https://api.wordpress.org/secret-key/1.1/salt/"
FPM_HANDLER = "proxy:fcgi://127.0.0.1:9000"
SMOKE_FILE = "test.php"
LOG_TAIL_LINES = 20

FPM_PROXY_CONF = """<FilesMatch \\.php$>
    SetHandler "{handler}"
</FilesMatch>
"""

PERFORMANCE_CONF = """# Enable compression for text files
<IfModule mod_deflate.c>
  AddOutputFilterByType DEFLATE text/html text/plain text/xml text/css text/javascript application/javascript application/x-javascript application/json
</IfModule>

# Enable browser caching
<IfModule mod_expires.c>
  ExpiresActive On
  ExpiresByType image/jpg "access plus 1 year"
  ExpiresByType image/jpeg "access plus 1 year"
  ExpiresByType image/gif "access plus 1 year"
  ExpiresByType image/png "access plus 1 year"
  ExpiresByType image/webp "access plus 1 year"
  ExpiresByType text/css "access plus 1 month"
  ExpiresByType application/javascript "access plus 1 month"
</IfModule>
"""

POOL_LINE = re.compile(r"^\s*(?P<comment>;)?\s*(?P<key>[\w.]+)\s*=\s*(?P<value>.*?)\s*$")


# ---------------------------
# Renderers
# ---------------------------

def php_quote(value: str) -> str:
    """Single-quoted PHP string literal"""
    return "'" + str(value).replace("\\", "\\\\").replace("'", "\\'") + "'"


def render_wp_config(cfg: Dict, salts: str) -> str:
    """wp-config.php for an external database, with home/site URL taken from the request's Host header."""
    return f"""<?php
/**
 * WordPress Configuration File
 *
 * Database settings for RDS connection
 */

// Database connection settings
define( 'DB_NAME', {php_quote(cfg['db_name'])} );
define( 'DB_USER', {php_quote(cfg['db_user'])} );
define( 'DB_PASSWORD', {php_quote(cfg['db_pass'])} );
define( 'DB_HOST', {php_quote(cfg['db_host'])} );
define( 'DB_CHARSET', 'utf8' );
define( 'DB_COLLATE', '' );

// Security salts
{salts.strip()}

$table_prefix = {php_quote(cfg['table_prefix'])};

// Behind an ELB/ALB the public host name only arrives in the Host header
define( 'WP_HOME', 'http://' . $_SERVER['HTTP_HOST'] );
define( 'WP_SITEURL', 'http://' . $_SERVER['HTTP_HOST'] );

define( 'WP_DEBUG', false );

/* That's all, stop editing! Happy publishing. */

if ( ! defined( 'ABSPATH' ) ) {{
    define( 'ABSPATH', __DIR__ . '/' );
}}

require_once ABSPATH . 'wp-settings.php';
"""


def patch_pool_config(text: str, settings: Mapping[str, str]) -> str:
    """
    Set key = value pairs in a php-fpm pool file.

    Active assignments are rewritten in place. A key that is only present
    commented out (``;listen.owner = nobody``) has its first commented line
    replaced, and a key that is absent is appended. Applying the same
    settings twice returns the text unchanged.
    """
    lines = text.splitlines()
    active = set()
    for line in lines:
        m = POOL_LINE.match(line)
        if m and not m.group("comment"):
            active.add(m.group("key"))

    out: List[str] = []
    placed = set()
    for line in lines:
        m = POOL_LINE.match(line)
        key = m.group("key") if m else None
        if key in settings:
            if not m.group("comment"):
                out.append(f"{key} = {settings[key]}")
                placed.add(key)
                continue
            if key not in active and key not in placed:
                out.append(f"{key} = {settings[key]}")
                placed.add(key)
                continue
        out.append(line)

    for key, value in settings.items():
        if key not in placed:
            out.append(f"{key} = {value}")

    return "\n".join(out) + "\n"


# ---------------------------
# Helpers
# ---------------------------

def package_installed(name: str, dry_run: bool) -> bool:
    return run_cmd(f"rpm -q {name}", capture_output=True, check=False, dry_run=dry_run).returncode == 0


def owner(cfg: Dict) -> str:
    return f"{cfg['service_user']}:{cfg['service_group']}"


def services(cfg: Dict) -> List[str]:
    return [cfg["fpm_service"], cfg["web_service"]]


def show_status(cfg: Dict):
    for svc in services(cfg):
        run_cmd(f"systemctl status {svc} --no-pager", check=False, dry_run=cfg["dry_run"])


# ---------------------------
# Step functions
# ---------------------------

def step_install_packages(cfg: Dict):
    run_cmd("dnf update -y", dry_run=cfg["dry_run"])
    run_cmd(f"dnf install -y {' '.join(cfg['packages'])}", dry_run=cfg["dry_run"])

    fpm = cfg["fpm_package"]
    if not package_installed(fpm, cfg["dry_run"]):
        error(f"{fpm} package failed to install. Retrying...")
        run_cmd(f"dnf install -y {fpm}", dry_run=cfg["dry_run"])
    success("Apache, PHP and PHP-FPM installed")


def step_start_services(cfg: Dict):
    """Start failures are only logged; enabling the unit is still required."""
    for svc in services(cfg):
        result = run_cmd(f"systemctl start {svc}", check=False, dry_run=cfg["dry_run"])
        if result.returncode != 0:
            warning(f"Error starting {svc}, checking status...", returncode=result.returncode)
        run_cmd(f"systemctl status {svc} --no-pager", check=False, dry_run=cfg["dry_run"])
        run_cmd(f"systemctl enable {svc}", dry_run=cfg["dry_run"])


def step_configure_fpm_proxy(cfg: Dict):
    path = Path(cfg["httpd_conf_dir"]) / "php-fpm.conf"
    atomic_write(path, FPM_PROXY_CONF.format(handler=cfg["fpm_handler"]), dry_run=cfg["dry_run"])


def step_install_wordpress(cfg: Dict):
    count = download_and_extract(cfg["archive_url"], Path(cfg["doc_root"]), cfg["dry_run"], timeout=cfg["http_timeout"])
    success("WordPress extracted", doc_root=cfg["doc_root"], entries=count)


def step_set_permissions(cfg: Dict):
    run_cmd(f"chown -R {owner(cfg)} {cfg['doc_root']}", dry_run=cfg["dry_run"])
    run_cmd(f"chmod -R 755 {cfg['doc_root']}", dry_run=cfg["dry_run"])


def step_set_selinux_context(cfg: Dict):
    if run_cmd("selinuxenabled", check=False, dry_run=cfg["dry_run"]).returncode != 0:
        info("SELinux is disabled or not installed; skipping context change")
        return
    run_cmd(f"chcon -R -t httpd_sys_content_t {cfg['doc_root']}", dry_run=cfg["dry_run"])


def step_write_wp_config(cfg: Dict):
    if cfg["dry_run"]:
        dry_run_print(f"Would fetch secret keys from {cfg['salt_url']}")
        salts = "// secret keys are fetched when provisioning runs"
    else:
        info("Fetching WordPress salts from API...")
        salts = http_get(cfg["salt_url"], timeout=cfg["http_timeout"])
        debug("WordPress salts fetched", salts_length=len(salts))

    path = Path(cfg["doc_root"]) / "wp-config.php"
    atomic_write(path, render_wp_config(cfg, salts), mode=0o640, dry_run=cfg["dry_run"])


def step_secure_wp_config(cfg: Dict):
    run_cmd(f"chown {owner(cfg)} {Path(cfg['doc_root']) / 'wp-config.php'}", dry_run=cfg["dry_run"])


def step_write_performance_conf(cfg: Dict):
    path = Path(cfg["httpd_conf_dir"]) / "wordpress-performance.conf"
    atomic_write(path, PERFORMANCE_CONF, dry_run=cfg["dry_run"])


def step_patch_fpm_pool(cfg: Dict):
    path = Path(cfg["fpm_pool_conf"])
    settings = {
        "listen.owner": cfg["service_user"],
        "listen.group": cfg["service_group"],
        "user": cfg["service_user"],
        "group": cfg["service_group"],
    }
    if cfg["dry_run"] and not path.exists():
        dry_run_print(f"Would set {', '.join(settings)} in {path}")
        return

    with open(path, "r") as f:
        original = f.read()
    patched = patch_pool_config(original, settings)
    if patched == original:
        info(f"{path} already configured")
        return
    atomic_write(path, patched, dry_run=cfg["dry_run"])


def step_restart_services(cfg: Dict):
    for svc in services(cfg):
        run_cmd(f"systemctl restart {svc}", dry_run=cfg["dry_run"])
    show_status(cfg)


def step_show_logs(cfg: Dict):
    web_log = Path(cfg["web_error_log"])
    if web_log.is_file():
        print(f"Last {LOG_TAIL_LINES} lines of Apache error log:")
        print(tail(web_log, LOG_TAIL_LINES))
    else:
        info("Apache error log file not found", path=str(web_log))

    fpm_dir = Path(cfg["fpm_log_dir"])
    for name in ("error.log", "www-error.log"):
        candidate = fpm_dir / name
        if candidate.is_file():
            print(f"Last {LOG_TAIL_LINES} lines of PHP-FPM {name}:")
            print(tail(candidate, LOG_TAIL_LINES))
            return

    log_root = Path(cfg["log_root"])
    if not log_root.is_dir():
        return
    info(f"Looking for any PHP-FPM logs in {log_root}:")
    for path in sorted(log_root.rglob("*")):
        if path.is_file() and ("php" in path.name or "fpm" in path.name):
            print(path)


def step_smoke_test(cfg: Dict):
    test_file = Path(cfg["doc_root"]) / SMOKE_FILE
    atomic_write(test_file, "<?php phpinfo(); ?>\n", mode=0o644, dry_run=cfg["dry_run"])
    try:
        run_cmd(f"chown {owner(cfg)} {test_file}", dry_run=cfg["dry_run"])
        if cfg["dry_run"]:
            dry_run_print(f"Would fetch {cfg['smoke_url']}")
            return
        body = http_get(cfg["smoke_url"], timeout=cfg["http_timeout"], raise_for_status=False)
        print("\n".join(body.splitlines()[:LOG_TAIL_LINES]))
        info("PHP test request complete")
    finally:
        remove_path(test_file, dry_run=cfg["dry_run"])


STEPS = [
    ("Install Apache, PHP and PHP-FPM", step_install_packages, True),
    ("Start and enable PHP-FPM and Apache", step_start_services, True),
    ("Route PHP requests to PHP-FPM", step_configure_fpm_proxy, True),
    ("Download and extract WordPress", step_install_wordpress, True),
    ("Set ownership and permissions", step_set_permissions, True),
    ("Set SELinux context", step_set_selinux_context, True),
    ("Create wp-config.php", step_write_wp_config, True),
    ("Restrict wp-config.php ownership", step_secure_wp_config, True),
    ("Add Apache performance configuration", step_write_performance_conf, True),
    ("Configure PHP-FPM pool", step_patch_fpm_pool, True),
    ("Restart PHP-FPM and Apache", step_restart_services, True),
    ("Check service logs", step_show_logs, False),
    ("Test PHP processing", step_smoke_test, True),
]


def show_plan(cfg: Dict):
    banner("WordPress installation plan", [
        f"Mode: {'DRY-RUN (no changes)' if cfg['dry_run'] else 'EXECUTE'}",
        f"Document root: {cfg['doc_root']}",
        f"Service account: {owner(cfg)}",
        f"PHP handler: {cfg['fpm_handler']}",
        f"Database: {cfg['db_name']} (user: {cfg['db_user']})",
        f"DB Host: {cfg['db_host']}",
    ])


def show_summary(cfg: Dict):
    banner("WordPress installation complete!", [
        f"Database: {cfg['db_name']}",
        f"DB Host: {cfg['db_host']}",
        "You can now access WordPress to complete the setup",
    ])


# ---------------------------
# Main runner
# ---------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Apache + PHP-FPM + WordPress installer for an external database")
    parser.add_argument("-n", "--db-name", default=DB_DEFAULTS["db_name"], help="Database name")
    parser.add_argument("-u", "--db-user", default=DB_DEFAULTS["db_user"], help="Database user")
    parser.add_argument("-p", "--db-pass", default=DB_DEFAULTS["db_pass"], help="Database password")
    parser.add_argument("--db-host", default=DB_DEFAULTS["db_host"], help="Database endpoint")
    parser.add_argument("--table-prefix", default="wp_", help="WordPress table prefix (default wp_)")
    parser.add_argument("--doc-root", default="/var/www/html", help="Apache document root (default /var/www/html)")
    parser.add_argument("--service-user", default="apache", help="Account owning web files and FPM workers (default apache)")
    parser.add_argument("--service-group", default="apache", help="Group owning web files and FPM workers (default apache)")
    parser.add_argument("--archive-url", default=ARCHIVE_URL, help=f"WordPress archive (default {ARCHIVE_URL})")
    parser.add_argument("--salt-url", default=SALT_URL, help=f"Secret key generator (default {SALT_URL})")
    parser.add_argument("--fpm-handler", default=FPM_HANDLER, help=f"Apache handler for .php files (default {FPM_HANDLER})")
    parser.add_argument("--smoke-url", default=f"http://localhost/{SMOKE_FILE}", help="URL used to test PHP processing")
    parser.add_argument("--http-timeout", type=float, default=15, help="Timeout in seconds for HTTP requests (default 15)")
    mode_group = parser.add_mutually_exclusive_group()
    mode_group.add_argument("--dry-run", dest="dry_run", action="store_true", default=True, help="Show what would be done (default)")
    mode_group.add_argument("--execute", dest="dry_run", action="store_false", help="Actually provision the host")
    parser.add_argument("-y", "--yes", dest="assume_yes", action="store_true", help="Do not ask for confirmation")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose debug logging")
    return parser


def build_config(args: argparse.Namespace) -> Dict:
    return {
        "db_name": args.db_name,
        "db_user": args.db_user,
        "db_pass": args.db_pass,
        "db_host": args.db_host,
        "table_prefix": args.table_prefix,
        "doc_root": args.doc_root,
        "service_user": args.service_user,
        "service_group": args.service_group,
        "archive_url": args.archive_url,
        "salt_url": args.salt_url,
        "fpm_handler": args.fpm_handler,
        "smoke_url": args.smoke_url,
        "http_timeout": args.http_timeout,
        "packages": list(PACKAGES),
        "fpm_package": "php-fpm",
        "fpm_service": "php-fpm",
        "web_service": "httpd",
        "httpd_conf_dir": "/etc/httpd/conf.d",
        "fpm_pool_conf": "/etc/php-fpm.d/www.conf",
        "web_error_log": "/var/log/httpd/error_log",
        "fpm_log_dir": "/var/log/php-fpm",
        "log_root": "/var/log",
        "dry_run": args.dry_run,
        "assume_yes": args.assume_yes,
    }


def main(argv=None):
    args = build_parser().parse_args(argv)
    set_verbose(args.verbose)
    cfg = build_config(args)
    debug("Configuration prepared", doc_root=cfg["doc_root"], db_host=cfg["db_host"], dry_run=cfg["dry_run"])
    show_plan(cfg)
    run_main(cfg, STEPS, show_summary)


if __name__ == "__main__":
    main()
