import logging
import subprocess
from typing import Callable, List

from story_node.services import ServiceController
from story_node.settings import NodeSettings

logger = logging.getLogger(__name__)


def resolve_service_name(controller: ServiceController, name: str, label: str, prompt: Callable[[str], str] = input) -> str:
    """Use `name` if systemd knows it, otherwise ask the operator for the unit name"""
    if controller.exists(name):
        return name
    answer = prompt(f"Enter the service file name for {label}: ").strip()
    return answer or name


def follow_command(units: List[str]) -> List[str]:
    cmd = ["journalctl"]
    for unit in units:
        cmd += ["-u", unit]
    return cmd + ["-f"]


def show_logs(
    settings: NodeSettings,
    controller: ServiceController,
    prompt: Callable[[str], str] = input,
    popen=subprocess.Popen,
) -> int:
    """Follow both service journals until Ctrl+C, then return to the caller"""
    story = resolve_service_name(controller, settings.story_service, "Story", prompt)
    geth = resolve_service_name(controller, settings.geth_service, "Story-geth", prompt)

    proc = popen(follow_command([story, geth]))
    try:
        return proc.wait()
    except KeyboardInterrupt:
        proc.terminate()
        try:
            proc.wait(timeout=5)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.wait()
        print()
        logger.info("Stopped following logs.")
        return 0
