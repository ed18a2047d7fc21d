"""
xteink-flasher CLI

Command-line interface for flashing firmware, backing up flash and managing
the boot partition of Xteink X4 devices.
"""

import sys
import json
import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.logging import RichHandler
from rich.markup import escape
from rich.progress import Progress, BarColumn, TaskID, TextColumn, DownloadColumn

from xteink_flasher.core.actions import FlashOrchestrator, IdentificationReport
from xteink_flasher.core.errors import FlasherError, InvalidStateEncoding, REMEDIATIONS
from xteink_flasher.core.firmware_identifier import (
    FirmwareInfo,
    identify_firmware,
    is_valid_esp32_image,
    is_identification_successful,
)
from xteink_flasher.core.ota_partition import OtaImage
from xteink_flasher.core.parsing import (
    parse_offset as _parse_offset_core,
    parse_partition_label as _parse_partition_label_core,
)
from xteink_flasher.core.safety import (
    CONFIRMATION_TOKEN,
    WritePermissionError,
    create_cli_safety_context,
    require_write_permission,
)
from xteink_flasher.core.steps import StepData, StepRunner, StepStatus
from xteink_flasher.models import DEFAULT_PROFILE, DeviceProfile, get_profile, list_profiles
from xteink_flasher.protocol import EspDeviceLink, list_serial_ports
from xteink_flasher.protocol.esp_link import ESPRESSIF_USB_VID

# Setup Rich console
console = Console()

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format="%(message)s",
    handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True, show_path=False)],
)
logger = logging.getLogger("xteink_flasher")

app = typer.Typer(help="📖 Xteink X4 firmware flasher - flash, back up and swap boot partitions")

STATUS_ICONS = {
    StepStatus.PENDING: "·",
    StepStatus.RUNNING: "…",
    StepStatus.SUCCESS: "✓",
    StepStatus.FAILED: "✗",
}

STATUS_STYLES = {
    StepStatus.PENDING: "dim",
    StepStatus.RUNNING: "cyan",
    StepStatus.SUCCESS: "green",
    StepStatus.FAILED: "red",
}

PortOption = typer.Option(None, "--port", "-p", help="Serial port (auto-detects an Espressif USB device if omitted)")
BaudOption = typer.Option(None, "--baud", "-b", help="Baud rate after stub load (default from profile)")
ProfileOption = typer.Option(DEFAULT_PROFILE, "--profile", help="Device profile (see 'profiles')")
WriteOption = typer.Option(False, "--write", help="Allow writing to the device")
ConfirmOption = typer.Option(None, "--confirm", help=f"Non-interactive confirmation token ('{CONFIRMATION_TOKEN}')")


def print_header(text: str) -> None:
    """Print fancy header."""
    console.print(Panel(text, expand=False, style="bold blue"))


def print_success(text: str) -> None:
    console.print(f"✓ {text}", style="green")


def print_warning(text: str) -> None:
    console.print(f"⚠️  {text}", style="yellow")


def print_error(text: str) -> None:
    console.print(f"❌ {text}", style="red")


def parse_offset(value: Optional[str]) -> Optional[int]:
    """
    Parse offset value from string.

    CLI wrapper around core.parsing.parse_offset that converts
    ValueError to typer.BadParameter for proper CLI error handling.
    """
    try:
        return _parse_offset_core(value)
    except ValueError as e:
        raise typer.BadParameter(str(e))


def parse_partition_label(value: str) -> str:
    try:
        return _parse_partition_label_core(value)
    except ValueError as e:
        raise typer.BadParameter(str(e))


def resolve_profile(name: str) -> DeviceProfile:
    try:
        return get_profile(name)
    except KeyError as e:
        raise typer.BadParameter(str(e.args[0]))


def build_orchestrator(port: Optional[str], baud: Optional[int], profile: str) -> FlashOrchestrator:
    link = EspDeviceLink(port=port, baud_rate=baud, profile=resolve_profile(profile))
    return FlashOrchestrator(link)


class StepProgressDisplay:
    """StepRunner listener that mirrors steps into a rich Progress."""

    def __init__(self, progress: Progress):
        self.progress = progress
        self.tasks: Dict[int, TaskID] = {}

    def __call__(self, steps: List[StepData]) -> None:
        for index, step in enumerate(steps):
            style = STATUS_STYLES[step.status]
            description = f"[{style}]{STATUS_ICONS[step.status]} {escape(step.name)}[/{style}]"

            if index not in self.tasks:
                self.tasks[index] = self.progress.add_task(description, total=None, start=False)
            task = self.tasks[index]

            if step.status is not StepStatus.PENDING:
                self.progress.start_task(task)

            if step.progress is not None:
                self.progress.update(
                    task,
                    description=description,
                    completed=step.progress.current,
                    total=step.progress.total,
                )
            elif step.status is StepStatus.SUCCESS:
                self.progress.update(task, description=description, completed=1, total=1)
            else:
                self.progress.update(task, description=description)


def print_step_table(steps: List[StepData]) -> None:
    """Print every step with its status, and the error of the failed one."""
    table = Table(title="Steps")
    table.add_column("#", style="dim")
    table.add_column("Step", style="cyan")
    table.add_column("Status")
    table.add_column("Detail", style="dim")

    for i, step in enumerate(steps, 1):
        style = STATUS_STYLES[step.status]
        detail = ""
        if step.error:
            detail = escape(f"{step.error.kind}: {step.error.message}")
        elif step.progress:
            detail = f"{step.progress.current:,}/{step.progress.total:,}"
        table.add_row(str(i), escape(step.name), f"[{style}]{step.status.value}[/{style}]", detail)

    console.print(table)


def run_workflow(orchestrator: FlashOrchestrator, workflow: Callable[[], Any]) -> Any:
    """
    Run a workflow with live step progress.

    Exits with status 1 if any step fails.
    """
    steps: StepRunner = orchestrator.steps
    try:
        with Progress(
            TextColumn("{task.description}"),
            BarColumn(),
            DownloadColumn(),
            console=console,
            transient=False,
        ) as progress:
            steps.listener = StepProgressDisplay(progress)
            return workflow()
    except FlasherError as e:
        console.print()
        print_step_table(steps.steps)
        print_error(escape(f"{e.kind}: {e.message}"))
        if e.remediation:
            console.print(f"   → {e.remediation}", style="cyan")
        raise typer.Exit(1)
    except Exception as e:
        console.print()
        print_step_table(steps.steps)
        print_error(escape(f"Operation failed: {e}"))
        logger.debug("Workflow failed", exc_info=True)
        raise typer.Exit(1)
    finally:
        steps.listener = None


def confirm_write(
    write_flag: bool,
    confirm_token: Optional[str],
    operation: str,
    target: str,
    bytes_length: int = 0,
    warnings: Optional[List[str]] = None,
) -> None:
    """
    Require explicit --write flag AND typed confirmation before any device write.

    Supports three modes:
    1. Non-interactive (script): --confirm WRITE provided, no prompts
    2. Interactive (TTY): prompts user for typed confirmation
    3. Non-interactive without token: errors with remediation

    Raises:
        typer.Abort: If confirmation fails or write not permitted
    """
    def show_details(details: dict) -> None:
        console.print()
        console.print(Panel(
            f"[bold yellow]⚠️  WRITE CONFIRMATION REQUIRED[/bold yellow]\n\n"
            f"Operation:     {details.get('operation', '')}\n"
            f"Target:        {details.get('target', '')}\n"
            + (f"Bytes:         {details['bytes_length']:,}\n" if details.get("bytes_length") else "")
            + "".join(f"[yellow]Warning:       {escape(w)}[/yellow]\n" for w in details.get("warnings", []))
            + f"\n[bold]Type '{CONFIRMATION_TOKEN}' to proceed, or anything else to abort:[/bold]",
            title="Device Write Operation",
            expand=False,
        ))

    def prompt_confirmation(prompt_text: str) -> str:
        return typer.prompt("Confirm")

    ctx = create_cli_safety_context(
        write_flag=write_flag,
        confirmation_token=confirm_token,
        prompt_confirmation=prompt_confirmation,
        show_details=show_details,
    )
    for warning in warnings or []:
        print_warning(warning)
        ctx.add_warning(warning)

    try:
        require_write_permission(ctx, operation=operation, target=target, bytes_length=bytes_length)
    except WritePermissionError as e:
        print_error(e.reason)
        if not write_flag:
            console.print("This is a safety measure to prevent accidental writes to your device.")
            console.print(f"Re-run with --write (and --confirm {CONFIRMATION_TOKEN} in scripts) to proceed.")
        raise typer.Abort()

    print_success("Confirmation accepted. Proceeding with write...")


def print_ota_table(ota: OtaImage) -> None:
    """Render both otadata records and the resulting boot selection."""
    info = ota.describe()

    table = Table(title="OTA Boot Selection")
    table.add_column("Partition", style="cyan")
    table.add_column("Sequence", style="green")
    table.add_column("State", style="magenta")
    table.add_column("CRC", style="yellow")
    table.add_column("Boot", style="bold")

    for label in ("app0", "app1"):
        record = info[label]
        crc_style = "green" if record["crc_valid"] else "red"
        table.add_row(
            label,
            str(record["sequence"]),
            record["state"],
            f"[{crc_style}]{record['crc']}[/{crc_style}]",
            "●" if info["current_boot"] == label else "",
        )

    console.print(table)
    if info["current_boot"] is None:
        print_warning("No valid boot record (factory-fresh otadata); app0 boots by default")
    console.print(f"Backup partition (next flash target): [cyan]{info['backup']}[/cyan]")


def print_firmware_table(rows: Dict[str, FirmwareInfo], current_boot: Optional[str] = None) -> None:
    table = Table(title="Firmware Identification")
    table.add_column("Source", style="cyan")
    table.add_column("Firmware", style="green")
    table.add_column("Version", style="magenta")
    table.add_column("Boot", style="bold")

    for source, info in rows.items():
        name_style = "green" if is_identification_successful(info) else "yellow"
        table.add_row(
            source,
            f"[{name_style}]{info.display_name}[/{name_style}]",
            info.version,
            "●" if current_boot == source else "",
        )

    console.print(table)


def save_output(data: bytes, out: Path) -> None:
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_bytes(data)
    print_success(f"Saved {len(data):,} bytes to {out}")


@app.callback()
def main_options(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)


@app.command()
def ports() -> None:
    """List available serial ports."""
    print_header("Available Serial Ports")

    ports_list = list_serial_ports()
    if not ports_list:
        print_warning("No serial ports found")
        return

    table = Table(title="Serial Ports")
    table.add_column("Port", style="cyan")
    table.add_column("Description", style="green")
    table.add_column("Espressif", style="magenta")

    for port in ports_list:
        table.add_row(
            port.device,
            port.description or "-",
            "Yes" if port.vid == ESPRESSIF_USB_VID else "",
        )

    console.print(table)


@app.command()
def profiles() -> None:
    """List supported device profiles and their flash layout."""
    print_header("Device Profiles")

    table = Table(title="Profiles")
    table.add_column("Name", style="cyan")
    table.add_column("Device", style="green")
    table.add_column("Flash", style="magenta")
    table.add_column("otadata", style="yellow")
    table.add_column("app0", style="yellow")
    table.add_column("app1", style="yellow")

    for profile in list_profiles():
        table.add_row(
            profile.name,
            profile.description,
            profile.flash_size_label,
            str(profile.otadata),
            str(profile.app0),
            str(profile.app1),
        )

    console.print(table)


@app.command("flash-official")
def flash_official(
    region: str = typer.Option("en", "--region", "-r", help="Firmware region: en (English) or ch (Chinese)"),
    port: Optional[str] = PortOption,
    baud: Optional[int] = BaudOption,
    profile: str = ProfileOption,
    write: bool = WriteOption,
    confirm: Optional[str] = ConfirmOption,
) -> None:
    """Download official firmware and flash it to the backup partition."""
    print_header(f"Flash Official Firmware ({region})")
    confirm_write(write, confirm, "Flash official firmware", f"backup app partition ({region})")

    orchestrator = build_orchestrator(port, baud, profile)
    ota = run_workflow(orchestrator, lambda: orchestrator.flash_official_firmware(region))
    print_success(f"Flashed; device now boots {ota.current_boot_partition_label()}")


@app.command("flash-crosspoint")
def flash_crosspoint(
    port: Optional[str] = PortOption,
    baud: Optional[int] = BaudOption,
    profile: str = ProfileOption,
    write: bool = WriteOption,
    confirm: Optional[str] = ConfirmOption,
) -> None:
    """Download the latest CrossPoint release and flash it to the backup partition."""
    print_header("Flash CrossPoint Community Firmware")
    confirm_write(write, confirm, "Flash CrossPoint firmware", "backup app partition")

    orchestrator = build_orchestrator(port, baud, profile)
    ota = run_workflow(orchestrator, orchestrator.flash_crosspoint_firmware)
    print_success(f"Flashed; device now boots {ota.current_boot_partition_label()}")


@app.command("flash-file")
def flash_file(
    firmware: Path = typer.Argument(..., help="Firmware .bin file"),
    port: Optional[str] = PortOption,
    baud: Optional[int] = BaudOption,
    profile: str = ProfileOption,
    write: bool = WriteOption,
    confirm: Optional[str] = ConfirmOption,
) -> None:
    """Flash a local firmware image to the backup partition."""
    print_header("Flash Custom Firmware")

    size = 0
    warnings = []
    if firmware.is_file():
        data = firmware.read_bytes()
        size = len(data)
        info = identify_firmware(data)
        console.print(f"File: {firmware} ({size:,} bytes)")
        console.print(f"Looks like: {info.display_name} ({info.version})")
        if not is_valid_esp32_image(data):
            warnings.append("File does not look like an ESP32 application image")

    confirm_write(
        write, confirm, "Flash custom firmware", f"backup app partition <- {firmware.name}", size, warnings
    )

    orchestrator = build_orchestrator(port, baud, profile)
    ota = run_workflow(orchestrator, lambda: orchestrator.flash_custom_firmware(lambda: firmware))
    print_success(f"Flashed; device now boots {ota.current_boot_partition_label()}")


@app.command("save-flash")
def save_flash(
    out: Path = typer.Option(Path("flash.bin"), "--out", "-o", help="Output file"),
    port: Optional[str] = PortOption,
    baud: Optional[int] = BaudOption,
    profile: str = ProfileOption,
) -> None:
    """Back up the entire flash to a file."""
    print_header("Save Full Flash")

    orchestrator = build_orchestrator(port, baud, profile)
    data = run_workflow(orchestrator, orchestrator.save_full_flash)
    save_output(data, out)


@app.command("write-flash")
def write_flash(
    image: Path = typer.Argument(..., help="Full flash image (as saved by save-flash)"),
    port: Optional[str] = PortOption,
    baud: Optional[int] = BaudOption,
    profile: str = ProfileOption,
    write: bool = WriteOption,
    confirm: Optional[str] = ConfirmOption,
) -> None:
    """Restore a full flash image."""
    print_header("Write Full Flash")

    device = resolve_profile(profile)
    size = image.stat().st_size if image.is_file() else 0
    warnings = []
    if size and size != device.flash_size:
        warnings.append(f"Image is {size:,} bytes, device flash is {device.flash_size:,} bytes")

    confirm_write(
        write, confirm, "Write full flash", f"entire flash ({device.flash_size_label})", size, warnings
    )

    orchestrator = build_orchestrator(port, baud, profile)
    run_workflow(orchestrator, lambda: orchestrator.write_full_flash(lambda: image))
    print_success("Flash restored")


@app.command("read-otadata")
def read_otadata(
    out: Optional[Path] = typer.Option(None, "--out", "-o", help="Also save the raw otadata partition"),
    output_json: bool = typer.Option(False, "--json", "-j", help="Output as JSON for scripting"),
    port: Optional[str] = PortOption,
    baud: Optional[int] = BaudOption,
    profile: str = ProfileOption,
) -> None:
    """Read and decode the OTA boot-selection partition."""
    if not output_json:
        print_header("Read otadata")

    orchestrator = build_orchestrator(port, baud, profile)
    ota = run_workflow(orchestrator, orchestrator.read_debug_otadata)

    if out:
        save_output(ota.to_bytes(), out)

    try:
        if output_json:
            console.print(json.dumps(ota.describe(), indent=2))
        else:
            print_ota_table(ota)
    except InvalidStateEncoding as e:
        print_error(escape(f"{e.kind}: {e.message}"))
        raise typer.Exit(1)


@app.command("read-app")
def read_app(
    label: str = typer.Argument(..., help="Partition: app0 or app1"),
    out: Optional[Path] = typer.Option(None, "--out", "-o", help="Output file (default <label>.bin)"),
    port: Optional[str] = PortOption,
    baud: Optional[int] = BaudOption,
    profile: str = ProfileOption,
) -> None:
    """Read a whole app partition to a file."""
    label = parse_partition_label(label)
    print_header(f"Read App Partition ({label})")

    orchestrator = build_orchestrator(port, baud, profile)
    data = run_workflow(orchestrator, lambda: orchestrator.read_app_partition(label))
    save_output(data, out or Path(f"{label}.bin"))

    info = identify_firmware(data)
    print_firmware_table({label: info})


@app.command("swap-boot")
def swap_boot(
    port: Optional[str] = PortOption,
    baud: Optional[int] = BaudOption,
    profile: str = ProfileOption,
    write: bool = WriteOption,
    confirm: Optional[str] = ConfirmOption,
) -> None:
    """Boot the other app partition on next reset."""
    print_header("Swap Boot Partition")
    confirm_write(write, confirm, "Swap boot partition", "otadata")

    orchestrator = build_orchestrator(port, baud, profile)
    ota = run_workflow(orchestrator, orchestrator.swap_boot_partition)
    print_ota_table(ota)
    print_success(f"Device now boots {ota.current_boot_partition_label()}")


@app.command()
def identify(
    output_json: bool = typer.Option(False, "--json", "-j", help="Output as JSON for scripting"),
    port: Optional[str] = PortOption,
    baud: Optional[int] = BaudOption,
    profile: str = ProfileOption,
) -> None:
    """Identify the firmware installed in both app partitions."""
    if not output_json:
        print_header("Identify Installed Firmware")

    orchestrator = build_orchestrator(port, baud, profile)
    report: IdentificationReport = run_workflow(orchestrator, orchestrator.read_and_identify_all_firmware)

    if output_json:
        console.print(json.dumps(report.to_dict(), indent=2))
        return

    print_firmware_table({"app0": report.app0, "app1": report.app1}, current_boot=report.current_boot)
    if report.current_boot is None:
        print_warning("No valid boot record; app0 boots by default")


@app.command("identify-file")
def identify_file(
    image: Path = typer.Argument(..., help="Firmware or flash dump file"),
    offset: Optional[str] = typer.Option(None, "--offset", "-o", help="Start of the app image inside the file (e.g. 0x650000)"),
    output_json: bool = typer.Option(False, "--json", "-j", help="Output as JSON for scripting"),
) -> None:
    """Identify a firmware image offline."""
    if not image.is_file():
        print_error(f"File not found: {image}")
        raise typer.Exit(1)

    start = parse_offset(offset) or 0
    data = image.read_bytes()[start:]
    info = identify_firmware(data)

    if output_json:
        result = info.to_dict()
        result["valid_image"] = is_valid_esp32_image(data)
        console.print(json.dumps(result, indent=2))
        return

    print_header("Firmware Identification")
    print_firmware_table({image.name: info})
    if not is_valid_esp32_image(data):
        print_warning("Not a valid ESP32 application image (magic/descriptor mismatch)")


@app.command("inspect-otadata")
def inspect_otadata(
    image: Path = typer.Argument(..., help="otadata dump or full flash dump"),
    offset: Optional[str] = typer.Option(None, "--offset", "-o", help="otadata offset inside the file (auto for full flash dumps)"),
    profile: str = ProfileOption,
    output_json: bool = typer.Option(False, "--json", "-j", help="Output as JSON for scripting"),
) -> None:
    """Decode an otadata dump offline."""
    if not image.is_file():
        print_error(f"File not found: {image}")
        raise typer.Exit(1)

    device = resolve_profile(profile)
    data = image.read_bytes()

    start = parse_offset(offset)
    if start is None:
        start = device.otadata.offset if len(data) >= device.flash_size else 0
    ota = OtaImage(data[start:start + device.otadata.size])

    try:
        if output_json:
            console.print(json.dumps(ota.describe(), indent=2))
            return
        print_header(f"otadata at 0x{start:06X} in {image.name}")
        print_ota_table(ota)
    except InvalidStateEncoding as e:
        print_error(escape(f"{e.kind}: {e.message}"))
        console.print(f"   → {REMEDIATIONS[e.kind]}", style="cyan")
        raise typer.Exit(1)


def main() -> None:
    """Main entry point."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("\n[yellow]Operation cancelled by user[/yellow]")
        sys.exit(130)


if __name__ == "__main__":
    main()
