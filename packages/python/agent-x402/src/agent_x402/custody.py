"""Transaction signers and the split-custody signing/broadcast service.

Two deployments are supported:

* ``LocalSigner`` holds the key in process and broadcasts through the
  agent's own :class:`~agent_x402.chain.ChainClient`.
* ``RemoteSigner`` never sees the key. It asks a signing oracle for a raw
  transaction and hands that to a broadcaster. :func:`create_custody_app`
  serves both endpoints from a process that does hold the key.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx
from eth_account import Account
from fastapi import FastAPI, status
from fastapi.responses import JSONResponse
from web3 import Web3
from web3.exceptions import Web3Exception

from .chain import ChainClient
from .config import (
    config_value,
    load_environment,
    normalize_address,
    parse_amount_minor,
    resolve_signing_key,
)
from .errors import ConfigurationError

logger = logging.getLogger(__name__)

JsonDict = Dict[str, Any]


class SigningError(RuntimeError):
    """Raised when a transaction cannot be signed or handed to the network."""

    def __init__(self, message: str, *, status: Optional[int] = None, response: Any = None) -> None:
        super().__init__(message)
        self.status = status
        self.response = response


class TransactionSigner(ABC):
    """Signs a fully populated transaction dict and broadcasts the result."""

    address: str

    @abstractmethod
    def sign_transaction(self, tx: JsonDict) -> str:
        ...

    @abstractmethod
    def broadcast(self, raw_tx: str, chain: ChainClient) -> str:
        ...

    def describe(self) -> JsonDict:
        return {"signer": self.address, "custody": type(self).__name__}


class LocalSigner(TransactionSigner):
    def __init__(self, private_key: str) -> None:
        key = private_key.strip()
        if not key.startswith("0x"):
            key = f"0x{key}"
        try:
            self._account = Account.from_key(key)
        except (ValueError, TypeError) as exc:
            raise ConfigurationError("private key is not a valid secp256k1 key") from exc
        self.address = self._account.address

    def sign_transaction(self, tx: JsonDict) -> str:
        signed = self._account.sign_transaction(tx)
        return Web3.to_hex(signed.raw_transaction)

    def broadcast(self, raw_tx: str, chain: ChainClient) -> str:
        try:
            return chain.send_raw_transaction(raw_tx)
        except (Web3Exception, OSError, ValueError) as exc:
            raise SigningError(f"broadcast failed: {exc}") from exc

    def __repr__(self) -> str:
        return f"LocalSigner(address={self.address!r})"


class RemoteSigner(TransactionSigner):
    """Client for a signing oracle plus a broadcaster."""

    def __init__(
        self,
        sign_url: str,
        broadcast_url: str,
        address: str,
        *,
        http_client: Optional[httpx.Client] = None,
        timeout: float = 30.0,
    ) -> None:
        self.sign_url = sign_url
        self.broadcast_url = broadcast_url
        self.address = normalize_address(address, field="signer address")
        self._client = http_client or httpx.Client(timeout=timeout)

    def _post(self, url: str, body: JsonDict) -> JsonDict:
        try:
            response = self._client.post(url, json=body)
        except httpx.HTTPError as exc:
            raise SigningError(f"custody service at {url} is unreachable: {exc}") from exc
        try:
            payload = response.json()
        except ValueError:
            payload = {"error": response.text}
        if not response.is_success or not isinstance(payload, dict) or payload.get("success") is not True:
            message = payload.get("message") or payload.get("error") if isinstance(payload, dict) else None
            raise SigningError(
                f"custody service at {url} rejected the request: {message or response.status_code}",
                status=response.status_code,
                response=payload,
            )
        return payload

    def sign_transaction(self, tx: JsonDict) -> str:
        body: JsonDict = {
            "to": tx["to"],
            "value": str(int(tx.get("value", 0))),
            "data": tx.get("data", "0x"),
        }
        for source, target in (("nonce", "nonce"), ("gasPrice", "gasPrice"), ("gas", "gasLimit"), ("chainId", "chainId")):
            if tx.get(source) is not None:
                body[target] = str(int(tx[source]))
        payload = self._post(self.sign_url, body)
        signer = payload.get("from")
        if isinstance(signer, str) and signer.lower() != self.address.lower():
            raise SigningError(f"signing oracle signed as {signer}, expected {self.address}")
        raw = payload.get("signedTransaction")
        if not isinstance(raw, str) or not raw:
            raise SigningError("signing oracle response is missing signedTransaction", response=payload)
        return raw

    def broadcast(self, raw_tx: str, chain: ChainClient) -> str:
        payload = self._post(self.broadcast_url, {"signedTransaction": raw_tx})
        tx_hash = payload.get("transactionHash")
        if not isinstance(tx_hash, str) or not tx_hash:
            raise SigningError("broadcaster response is missing transactionHash", response=payload)
        return tx_hash

    def close(self) -> None:
        self._client.close()

    def __repr__(self) -> str:
        return f"RemoteSigner(address={self.address!r}, sign_url={self.sign_url!r})"


def signer_from_env(role: str) -> TransactionSigner:
    """Remote custody when ``SIGNING_SERVICE_URL`` is set, local key otherwise."""
    load_environment()
    sign_url = config_value("SIGNING_SERVICE_URL", required=False)
    if sign_url:
        broadcast_url = config_value("BROADCAST_SERVICE_URL")
        address = config_value("SIGNING_WALLET_ADDRESS")
        logger.info("using remote custody for role=%s via %s", role, sign_url)
        return RemoteSigner(sign_url, broadcast_url, address)
    return LocalSigner(resolve_signing_key(role))


def create_custody_app(chain: ChainClient, signer: LocalSigner) -> FastAPI:
    """Signing oracle + broadcaster for split-custody deployments."""
    app = FastAPI(title="Agent Custody Service")

    @app.post("/payment/sign")
    def sign(payload: JsonDict) -> JSONResponse:
        to = payload.get("to")
        value = payload.get("value")
        if not to or value is None:
            return JSONResponse(
                {"success": False, "error": "Missing required parameters: to, value"},
                status_code=status.HTTP_400_BAD_REQUEST,
            )
        try:
            tx: JsonDict = {
                "to": normalize_address(to, field="to"),
                "value": parse_amount_minor(value, field="value"),
                "data": payload.get("data") or "0x",
            }
            for key, field in (("nonce", "nonce"), ("gasPrice", "gasPrice"), ("gasLimit", "gas"), ("chainId", "chainId")):
                if payload.get(key) is not None:
                    tx[field] = parse_amount_minor(payload[key], field=key)
        except ConfigurationError as err:
            return JSONResponse({"success": False, "error": str(err)}, status_code=status.HTTP_400_BAD_REQUEST)

        try:
            if "nonce" not in tx:
                tx["nonce"] = chain.get_nonce(signer.address)
            if "gasPrice" not in tx:
                tx["gasPrice"] = chain.gas_price()
            if "chainId" not in tx:
                tx["chainId"] = chain.chain_id()
            if "gas" not in tx:
                tx["gas"] = chain.estimate_gas({**tx, "from": signer.address})
            raw = signer.sign_transaction(tx)
        except (Web3Exception, OSError, ValueError) as exc:
            logger.warning("sign request failed to=%s: %s", tx.get("to"), exc)
            return JSONResponse(
                {"success": False, "error": "Failed to sign transaction", "message": str(exc)},
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            )

        logger.info("signed transaction from=%s to=%s value=%s nonce=%s", signer.address, tx["to"], tx["value"], tx["nonce"])
        return JSONResponse(
            {
                "success": True,
                "signedTransaction": raw,
                "from": signer.address,
                "to": tx["to"],
                "value": str(tx["value"]),
                "nonce": tx["nonce"],
            }
        )

    @app.post("/payment/broadcast")
    def broadcast(payload: JsonDict) -> JSONResponse:
        raw = payload.get("signedTransaction")
        if not isinstance(raw, str) or not raw:
            return JSONResponse(
                {"success": False, "error": "Missing signedTransaction parameter"},
                status_code=status.HTTP_400_BAD_REQUEST,
            )
        try:
            tx_hash = chain.send_raw_transaction(raw)
        except (Web3Exception, OSError, ValueError) as exc:
            logger.warning("broadcast failed: %s", exc)
            return JSONResponse(
                {"success": False, "error": "Failed to broadcast transaction", "message": str(exc)},
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            )
        logger.info("broadcast transaction hash=%s", tx_hash)
        return JSONResponse({"success": True, "transactionHash": tx_hash})

    _ = (sign, broadcast)
    return app
