"""
Host Convergence Demo

Demonstrates complete flow against a scratch directory on this machine:
    TargetSpec (inline)
        ↓
    Run #1 → directives change the host, gated edit passes, handler fires
        ↓
    Run #2 → nothing changes, handler stays quiet (idempotent)
        ↓
    Run #3 → a rejected edit aborts the run, live file untouched

No root access needed: every path lives under a temp directory.
"""

from pathlib import Path
import logging
import sys
import tempfile

# Add packages to path
repo_root = Path(__file__).parent
sys.path.insert(0, str(repo_root / "packages"))

from directives import Directive, Handler
from executor import EngineConfig, Run
from hostio import LocalConnection


def _build_target(workspace: Path, root_login: str):
    config_path = workspace / "sshd_config"
    validator = workspace / "check_config.sh"
    marker = workspace / "restarts.log"

    directives = [
        Directive.model_validate({
            "id": "motd",
            "tags": ["system"],
            "file": {"path": str(workspace / "motd"), "content": "Managed host\n", "mode": "0644"}
        }),
        Directive.model_validate({
            "id": "sshd-no-root-login",
            "tags": ["ssh", "security"],
            "risk_class": "lockout_risk",
            "validator": f"sh {validator} %s",
            "lineinfile": {
                "path": str(config_path),
                "lines": [{"regexp": "^#?PermitRootLogin", "line": "PermitRootLogin {{ root_login }}"}]
            },
            "notifies": ["restart-ssh"]
        }),
        Directive.model_validate({
            "id": "uptime",
            "probe": "uptime"
        }),
    ]
    handlers = [Handler(name="restart-ssh", command=f"echo restarted >> {marker}")]
    return directives, handlers, {"root_login": root_login}


def _print_report(title: str, report):
    print("\n" + "-" * 70)
    print(title)
    print("-" * 70)
    print(report.summary())


def demo_converge():
    """Demonstrate converge → re-converge → rejected edit."""
    print("\n" + "=" * 70)
    print("Host Convergence Demo")
    print("Run → DirectiveExecutor → ValidationGate → HandlerQueue")
    print("=" * 70)

    workspace = Path(tempfile.mkdtemp(prefix="converge_demo_"))
    print(f"\nDemo workspace: {workspace}")

    (workspace / "sshd_config").write_text("Port 22\n#PermitRootLogin yes\n")
    (workspace / "check_config.sh").write_text(
        "#!/bin/sh\n"
        "if grep -q '^PermitRootLogin \\(yes\\|no\\|prohibit-password\\)$' \"$1\"; then exit 0; fi\n"
        "echo \"$1: bad PermitRootLogin value\" >&2\n"
        "exit 1\n"
    )

    config = EngineConfig(backup_files=False)

    # ========== Run 1: converge ==========
    directives, handlers, variables = _build_target(workspace, "no")
    report = Run.from_directives(directives, LocalConnection, handlers, variables, config=config, host="localhost").execute()
    _print_report("Run 1: first convergence", report)

    # ========== Run 2: idempotent re-run ==========
    report = Run.from_directives(directives, LocalConnection, handlers, variables, config=config, host="localhost").execute()
    _print_report("Run 2: re-run changes nothing", report)

    # ========== Run 3: rejected edit ==========
    directives, handlers, variables = _build_target(workspace, "maybe")
    report = Run.from_directives(directives, LocalConnection, handlers, variables, config=config, host="localhost").execute()
    _print_report("Run 3: validator rejects the edit", report)

    print("\nLive sshd_config after Run 3:")
    print((workspace / "sshd_config").read_text())
    print("Handler log:")
    print((workspace / "restarts.log").read_text())


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    demo_converge()
