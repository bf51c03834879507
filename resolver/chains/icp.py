"""
ICP client for the Fusion resolver.

Talks to the escrow canister and the ICP ledger through the dfx CLI, and
validates principals in their textual form.
"""

import base64
import json
import logging
import shutil
import subprocess
import threading
import zlib
from typing import Optional, Any, List

from ..config import ICPConfig

log = logging.getLogger(__name__)

# Principals are at most 29 bytes
MAX_PRINCIPAL_BYTES = 29


# =============================================================================
# Principal text encoding
# =============================================================================

def principal_to_text(raw: bytes) -> str:
    """Encode principal bytes as "xxxxx-xxxxx-...-xxx" text."""
    checksum = zlib.crc32(raw).to_bytes(4, "big")
    encoded = base64.b32encode(checksum + raw).decode("ascii").lower().rstrip("=")
    return "-".join(encoded[i:i + 5] for i in range(0, len(encoded), 5))


def principal_from_text(text: str) -> bytes:
    """
    Decode a principal's textual form.

    Raises:
        ValueError: bad alphabet, checksum mismatch, or non-canonical text
    """
    compact = text.replace("-", "").upper()
    if not compact:
        raise ValueError("empty principal")
    padded = compact + "=" * (-len(compact) % 8)
    try:
        decoded = base64.b32decode(padded)
    except (ValueError, TypeError) as e:
        raise ValueError(f"invalid principal encoding: {e}")

    if len(decoded) < 4:
        raise ValueError("principal too short")
    checksum, raw = decoded[:4], decoded[4:]
    if len(raw) > MAX_PRINCIPAL_BYTES:
        raise ValueError("principal too long")
    if zlib.crc32(raw).to_bytes(4, "big") != checksum:
        raise ValueError("principal checksum mismatch")
    if principal_to_text(raw) != text:
        raise ValueError("principal is not in canonical form")
    return raw


def is_principal(text: str) -> bool:
    try:
        principal_from_text(text)
        return True
    except ValueError:
        return False


# =============================================================================
# Candid argument helpers
# =============================================================================

def candid_text(value: str) -> str:
    return json.dumps(value)


def candid_blob(value: bytes) -> str:
    return 'blob "' + "".join(f"\\{b:02x}" for b in value) + '"'


def candid_nat64(value: int) -> str:
    return f"{int(value)} : nat64"


def candid_nat(value: int) -> str:
    return f"{int(value)} : nat"


def decode_bytes(value: Any) -> bytes:
    """Decode a blob from dfx JSON output (byte list or hex string)."""
    if isinstance(value, list):
        return bytes(int(v) for v in value)
    if isinstance(value, str):
        text = value[2:] if value.startswith("0x") else value
        return bytes.fromhex(text.replace("\\", ""))
    raise ValueError(f"cannot decode blob from {type(value).__name__}")


def decode_nat(value: Any) -> int:
    """Decode a nat from dfx JSON output ("1_000", "1000" or 1000)."""
    if isinstance(value, int):
        return value
    return int(str(value).replace("_", ""))


# =============================================================================
# dfx client
# =============================================================================

class DFXClient:
    """
    dfx CLI client.

    Provides access to:
    - Escrow canister calls (update and query)
    - ICP / ICRC ledger balance and approvals
    - The resolver identity's principal
    """

    def __init__(self, config: ICPConfig):
        self.config = config
        self.dfx_path = config.dfx_path or shutil.which("dfx")
        self._principal: Optional[str] = None
        # Callers hold it across approve + the call that spends the allowance
        self.lock = threading.RLock()

    def _build_cmd(self, *args, network: bool = True) -> List[str]:
        if not self.dfx_path:
            raise RuntimeError("dfx not found")

        cmd = [str(self.dfx_path)]
        cmd.extend(str(a) for a in args)
        if network:
            cmd.extend(["--network", self.config.network])
        if self.config.identity:
            cmd.extend(["--identity", self.config.identity])
        return cmd

    def _run(self, cmd: List[str], timeout: int) -> str:
        log.debug(f"dfx cmd: {' '.join(cmd)}")
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout
            )
        except subprocess.TimeoutExpired:
            raise RuntimeError(f"dfx timeout: {' '.join(cmd[1:4])}")

        if result.returncode != 0:
            error = result.stderr.strip()
            log.error(f"dfx error: {' '.join(cmd[1:4])} -> {error}")
            raise RuntimeError(f"dfx call failed: {error}")
        return result.stdout.strip()

    def call(self, canister: str, method: str, argument: str = "()",
             query: bool = False, timeout: int = None) -> Any:
        """Call a canister method and decode its JSON output."""
        args = ["canister", "call", canister, method, argument, "--output", "json"]
        if query:
            args.append("--query")
        output = self._run(self._build_cmd(*args), timeout or self.config.call_timeout)
        if not output:
            return None
        try:
            return json.loads(output)
        except json.JSONDecodeError:
            return output

    # =========================================================================
    # Identity
    # =========================================================================

    def get_principal(self) -> str:
        """Principal of the identity dfx signs with."""
        if self._principal is None:
            cmd = self._build_cmd("identity", "get-principal", network=False)
            self._principal = self._run(cmd, 30)
        return self._principal

    # =========================================================================
    # Ledger
    # =========================================================================

    def balance_of(self, ledger: str, owner: str) -> int:
        """ICRC-1 balance of an account's default subaccount."""
        arg = f'(record {{ owner = principal {candid_text(owner)}; subaccount = null }})'
        result = self.call(ledger, "icrc1_balance_of", arg, query=True)
        return decode_nat(result)

    def approve(self, ledger: str, spender: str, amount: int) -> int:
        """ICRC-2 approve so the spender can pull `amount` from us."""
        arg = (
            "(record { "
            f"spender = record {{ owner = principal {candid_text(spender)}; subaccount = null }}; "
            f"amount = {candid_nat(amount)}; "
            "fee = null; memo = null; from_subaccount = null; "
            "created_at_time = null; expected_allowance = null; expires_at = null "
            "})"
        )
        result = self.call(ledger, "icrc2_approve", arg)
        if isinstance(result, dict) and "Err" in result:
            raise RuntimeError(f"icrc2_approve failed: {result['Err']}")
        ok = result.get("Ok") if isinstance(result, dict) else result
        return decode_nat(ok)
