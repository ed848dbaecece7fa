"""
Archive - package, encrypt and deliver the output of a run.

    create_output_archive   <dir>/<drop basename>.tar.gz, readable by owner only
    encrypt_output_archive  <archive>.gpg for the support team's key
    sftp_upload             put the archive on the support SFTP server
    display_summary         tell the operator where the archive is

All of these report what they would do and return early in noop mode.
"""

from __future__ import annotations

import os
import shlex
import subprocess
import tarfile
from pathlib import Path
from typing import Callable

from pe_support.helpers import ExecutionFailure, run_shell
from pe_support.settings import Settings

DOC_URL = "https://puppet.com/docs/pe/latest/getting_support_for_pe.html#the-pe-support-script"

PGP_RECIPIENT = "FD172197"

SFTP_HOST = "customer-support.puppetlabs.net"
SFTP_USER = "puppet.enterprise.support"

SSH_OPTIONS = [
    "Ciphers=aes256-ctr,aes192-ctr,aes128-ctr",
    "KexAlgorithms=diffie-hellman-group-exchange-sha256",
    "MACs=hmac-sha2-512,hmac-sha2-256",
    "Protocol=2",
    "ConnectTimeout=16",
    "BatchMode=yes",
]

SFTP_TIMEOUT = 600

Display = Callable[[str], None]


def _check_call(command_line: str, timeout: float = 0) -> str:
    try:
        proc = run_shell(command_line, timeout)
    except subprocess.TimeoutExpired:
        raise ExecutionFailure(command_line, None, f"timed out after {timeout}s")
    if proc.returncode != 0:
        raise ExecutionFailure(command_line, proc.returncode, proc.stderr.strip())
    return proc.stdout


def create_output_archive(settings: Settings, drop_directory: Path | str, display: Display = print) -> Path:
    """Write the drop directory to a gzipped tarball next to it."""
    drop_directory = Path(drop_directory)
    output_archive = Path(settings.options.dir) / f"{drop_directory.name}.tar.gz"

    display(f"Creating output archive: {output_archive}")
    if settings.noop:
        return output_archive

    old_umask = os.umask(0o077)
    try:
        with tarfile.open(output_archive, "w:gz", compresslevel=9) as tar:
            tar.add(str(drop_directory), arcname=drop_directory.name)
    finally:
        os.umask(old_umask)

    return output_archive


def encrypt_output_archive(settings: Settings, output_archive: Path | str, display: Display = print) -> Path:
    """
    Encrypt the archive with gpg and remove the plaintext copy.

    The recipient key comes from the gpg_key option when set, imported into
    a private homedir inside the drop directory; otherwise it must already
    be in the user's keyring.
    """
    output_archive = Path(output_archive)
    encrypted_archive = output_archive.with_name(output_archive.name + ".gpg")
    gpg = shlex.quote(settings.state["gpg_command"])

    display(f"Encrypting output archive file: {output_archive}")
    if settings.noop:
        return encrypted_archive

    homedir_option = ""
    gpg_key = settings.options.gpg_key
    if gpg_key:
        gpg_homedir = Path(settings.state["drop_directory"]) / "gpg"
        gpg_homedir.mkdir(mode=0o700, exist_ok=True)
        homedir_option = f"--homedir {shlex.quote(str(gpg_homedir))}"
        _check_call(f"{gpg} --quiet --import {homedir_option} {shlex.quote(gpg_key)}")

    _check_call(
        f"{gpg} --quiet {homedir_option} --trust-model always "
        f"--recipient {PGP_RECIPIENT} --encrypt {shlex.quote(str(output_archive))}"
    )
    output_archive.unlink()

    return encrypted_archive


def sftp_command_line(settings: Settings, output_archive: Path | str) -> str:
    """Build the batch-mode sftp invocation used to upload an archive."""
    options = settings.options

    ssh_options = [f"-o {shlex.quote(o)}" for o in SSH_OPTIONS]
    if options.upload_disable_host_key_check:
        ssh_options += ["-o StrictHostKeyChecking=no", "-o UserKnownHostsFile=/dev/null"]
    else:
        ssh_options.append("-o StrictHostKeyChecking=yes")
    if options.upload_key:
        ssh_options.append(f"-o {shlex.quote('IdentityFile=' + os.path.abspath(options.upload_key))}")

    if options.upload_user:
        url = f"{options.upload_user}@{SFTP_HOST}:/"
    else:
        url = f"{SFTP_USER}@{SFTP_HOST}:/drop/"

    sftp = shlex.quote(settings.state.get("sftp_command", "sftp"))
    put = shlex.quote(f"put {output_archive}")
    return f"echo {put} | {sftp} {' '.join(ssh_options)} {shlex.quote(url)} 2>&1"


def _manual_upload_instructions(output_archive: Path, detail: str, display: Display) -> None:
    display(f" ** Unable to upload the output archive file. {detail}")
    display("")
    display("    Please manually upload the output archive file to Puppet Support.")
    display("")
    display(f"    Output archive file: {output_archive}")
    display("")


def sftp_upload(settings: Settings, output_archive: Path | str, display: Display = print) -> bool:
    """Upload the archive. On failure, tell the operator how to send it by hand."""
    output_archive = Path(output_archive)
    display(f"Uploading: {output_archive} via SFTP")
    if settings.noop:
        return True

    command_line = sftp_command_line(settings, output_archive)
    try:
        proc = run_shell(command_line, SFTP_TIMEOUT)
    except subprocess.TimeoutExpired:
        settings.log.error(f"sftp upload timed out after {SFTP_TIMEOUT}s")
        _manual_upload_instructions(output_archive, "SFTP command timed out.", display)
        return False

    if proc.returncode != 0:
        settings.log.error(f"sftp upload failed with status {proc.returncode}: {proc.stdout.strip()}")
        _manual_upload_instructions(output_archive, f"SFTP Output:\n\n{proc.stdout}", display)
        return False

    display(f"File uploaded to: {SFTP_HOST}")
    output_archive.unlink()
    return True


def display_summary(output_archive: Path | str, display: Display = print) -> None:
    display("Puppet Enterprise customers ...")
    display("")
    display("  We recommend that you examine the collected data before forwarding to Puppet,")
    display("  as it may contain sensitive information that you may wish to redact.")
    display("")
    display("  An overview of the data collected by this tool can be found at:")
    display(f"  {DOC_URL}")
    display("")
    display("  Please upload the output archive file to Puppet Support.")
    display("")
    display(f"  Output archive file: {output_archive}")
    display("")

