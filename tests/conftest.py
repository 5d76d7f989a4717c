import argparse
import subprocess

import pytest

from ec2_bootstrap import wordpress


class FakeRunner:
    """Stands in for run_cmd: records commands, answers with canned return codes."""

    def __init__(self, returncodes=None):
        self.commands = []
        self.returncodes = returncodes or {}

    def __call__(self, cmd, capture_output=False, check=True, dry_run=True):
        self.commands.append(cmd)
        codes = self.returncodes.get(cmd, 0)
        if isinstance(codes, list):
            code = codes.pop(0) if codes else 0
        else:
            code = codes
        if check and code != 0:
            raise subprocess.CalledProcessError(code, cmd)
        return subprocess.CompletedProcess(args=cmd, returncode=code, stdout="", stderr="")


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def wp_cfg(tmp_path):
    args = wordpress.build_parser().parse_args(["--execute", "--yes"])
    cfg = wordpress.build_config(args)
    cfg.update({
        "doc_root": str(tmp_path / "html"),
        "httpd_conf_dir": str(tmp_path / "conf.d"),
        "fpm_pool_conf": str(tmp_path / "www.conf"),
        "web_error_log": str(tmp_path / "log" / "httpd" / "error_log"),
        "fpm_log_dir": str(tmp_path / "log" / "php-fpm"),
        "log_root": str(tmp_path / "log"),
    })
    (tmp_path / "html").mkdir()
    return cfg


@pytest.fixture
def page_args():
    return argparse.Namespace(
        doc_root="/var/www/html",
        metadata_url="http://169.254.169.254/latest/",
        token_ttl=21600,
        strict_metadata=False,
        dry_run=False,
        assume_yes=True,
    )
