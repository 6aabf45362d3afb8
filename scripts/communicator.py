"""SSH communicator settings shared with the provisioning steps."""

import os
from dataclasses import dataclass

COMMUNICATOR_TYPES = ("ssh", "none")


@dataclass
class SSHConfig:
    communicator: str = "ssh"
    ssh_username: str = ""
    ssh_port: int = 22
    ssh_timeout: int = 300
    ssh_private_key_file: str = ""

    def prepare(self) -> list[str]:
        """Validate the communicator settings. Returns every problem found."""
        errs = []
        if self.communicator not in COMMUNICATOR_TYPES:
            errs.append(
                f"'communicator' must be one of {', '.join(COMMUNICATOR_TYPES)}, "
                f"got {self.communicator!r}"
            )
        if self.communicator == "none":
            return errs

        if not isinstance(self.ssh_port, int) or not 0 < self.ssh_port < 65536:
            errs.append(f"'ssh_port' must be between 1 and 65535, got {self.ssh_port!r}")
        if not isinstance(self.ssh_timeout, int) or self.ssh_timeout <= 0:
            errs.append(f"'ssh_timeout' must be a positive number of seconds, got {self.ssh_timeout!r}")
        if self.ssh_private_key_file and not os.access(self.ssh_private_key_file, os.R_OK):
            errs.append(f"ssh_private_key_file is not readable: {self.ssh_private_key_file}")
        return errs
