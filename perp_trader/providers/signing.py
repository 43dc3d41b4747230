"""L1 action signing for the exchange endpoint."""
import threading
import time
from typing import Any, Dict, Optional

from eth_account import Account
from hyperliquid.utils.signing import sign_l1_action


class NonceSource:
    """Millisecond timestamps, strictly increasing within the process."""

    def __init__(self, clock=time.time):
        self._clock = clock
        self._last = 0
        self._lock = threading.Lock()

    def next(self) -> int:
        with self._lock:
            nonce = int(self._clock() * 1000)
            if nonce <= self._last:
                nonce = self._last + 1
            self._last = nonce
            return nonce


class ActionSigner:
    """Builds signed ``/exchange`` payloads for a wallet."""

    def __init__(self, private_key: str, nonces: Optional[NonceSource] = None):
        self.wallet = Account.from_key(private_key)
        self.nonces = nonces or NonceSource()

    @property
    def address(self) -> str:
        return self.wallet.address

    def build_payload(self, action: Dict[str, Any], testnet: bool) -> Dict[str, Any]:
        nonce = self.nonces.next()
        signature = sign_l1_action(self.wallet, action, None, nonce, None, not testnet)
        return {
            "action": action,
            "nonce": nonce,
            "signature": signature,
            "vaultAddress": None,
            "expiresAfter": None,
        }
