"""Ways of running commands and copying files onto an endpoint.

The Action state machine only ever talks to a RemoteChannel, so the same
rollout logic works whether the endpoint is this machine or a host reached
over SSH.
"""

import asyncio
import os
import shlex
import shutil
from asyncio.subprocess import PIPE, STDOUT

from .errors import CommandError
from .logger import get_logger

# Shell exit status when the command itself does not exist
COMMAND_NOT_FOUND = 127

COPY_CHUNK_SIZE = 64 * 1024


async def _communicate(argv, stdin=None):
    """Run argv to completion and return (exit_status, combined output)"""
    proc = await asyncio.create_subprocess_exec(*argv, stdin=stdin, stdout=PIPE, stderr=STDOUT)
    try:
        out, _ = await proc.communicate()
    except asyncio.CancelledError:
        if proc.returncode is None:
            proc.kill()
        raise
    return proc.returncode, out.decode(errors="replace")


def _copy_local(src, dst, mode):
    fd = os.open(dst, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
    with os.fdopen(fd, "wb") as out:
        # The mode passed to os.open only applies to new files and is masked by umask
        os.fchmod(out.fileno(), mode)
        shutil.copyfileobj(src, out, COPY_CHUNK_SIZE)


class RemoteChannel:
    """What an Action needs to be able to do on an endpoint"""

    async def run(self, command):
        """Run command, return its output, raise CommandError on a non-zero exit"""
        raise NotImplementedError

    async def start_detached(self, command):
        """Start command in the background without waiting for it"""
        raise NotImplementedError

    async def copy_file(self, src, dst, mode):
        """Stream the open binary file src to path dst and give it mode"""
        raise NotImplementedError

    async def find_process(self, name):
        """Return the PIDs of processes called name.

        Raises CommandError when the lookup fails, including when nothing
        matched (pidof exits 1).
        """
        output = await self.run(f"pidof {shlex.quote(name)}")
        return output.split()


class LocalChannel(RemoteChannel):
    """Runs everything on this machine through /bin/sh"""

    def __init__(self, shell="/bin/sh"):
        self.shell = shell
        self.logger = get_logger("channels")

    async def run(self, command):
        self.logger.debug(f"local: {command}")
        status, output = await _communicate([self.shell, "-c", command])
        if status != 0:
            raise CommandError(command, status, output)
        return output

    async def start_detached(self, command):
        await self.run(f"nohup {command} > /dev/null 2>&1 &")

    async def copy_file(self, src, dst, mode):
        self.logger.debug(f"local: copy to {dst} mode {mode:o}")
        await asyncio.to_thread(_copy_local, src, dst, mode)


class SSHChannel(RemoteChannel):
    """Runs everything on a remote host through the OpenSSH client"""

    def __init__(self, host, user=None, port=22, identity_file=None, options=("BatchMode=yes",), ssh="ssh"):
        self.host = host
        self.user = user
        self.port = port
        self.identity_file = identity_file
        self.options = list(options)
        self.ssh = ssh
        self.logger = get_logger("channels")

    @property
    def target(self):
        return f"{self.user}@{self.host}" if self.user else self.host

    def argv(self, command):
        argv = [self.ssh, "-p", str(self.port)]
        if self.identity_file:
            argv += ["-i", self.identity_file]
        for option in self.options:
            argv += ["-o", option]
        argv += [self.target, command]
        return argv

    async def run(self, command):
        self.logger.debug(f"ssh {self.target}: {command}")
        status, output = await _communicate(self.argv(command))
        if status != 0:
            raise CommandError(command, status, output)
        return output

    async def start_detached(self, command):
        # Without the redirects ssh keeps the session open until the binary exits
        await self.run(f"nohup {command} > /dev/null 2>&1 &")

    async def copy_file(self, src, dst, mode):
        quoted = shlex.quote(dst)
        command = f"cat > {quoted} && chmod {mode:o} {quoted}"
        self.logger.debug(f"ssh {self.target}: copy to {dst} mode {mode:o}")

        proc = await asyncio.create_subprocess_exec(*self.argv(command), stdin=PIPE, stdout=PIPE, stderr=STDOUT)
        try:
            while True:
                chunk = src.read(COPY_CHUNK_SIZE)
                if not chunk:
                    break
                proc.stdin.write(chunk)
                await proc.stdin.drain()
            proc.stdin.close()
            output = await proc.stdout.read()
            status = await proc.wait()
        finally:
            if proc.returncode is None:
                proc.kill()

        if status != 0:
            raise CommandError(command, status, output.decode(errors="replace"))


def channel_factory(config):
    """Return a callable mapping a Backend to the channel used to reach it"""
    if config.transport == "ssh":
        def make(backend):
            return SSHChannel(
                backend.ip,
                user=config.ssh_user,
                port=config.ssh_port,
                identity_file=config.ssh_identity_file,
            )
        return make

    local = LocalChannel()
    return lambda backend: local
