"""
EIP-712 eligibility signing.

The typed struct keeps the field names of the on-chain gate
(``user, survey, nullifier, deadline, chainId``); the API calls them
subject, pseudonym and expiry. Signing is stateless.
"""
from __future__ import annotations

import re
from typing import Any, Dict, List, Optional

from eth_account import Account
from eth_account.messages import encode_typed_data
from eth_utils import to_hex

from src.attestation.errors import InvalidInputError, SignerNotReadyError
from src.utils.logger import logger
from src.utils.time_utils import now_sec

ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
PSEUDONYM_RE = re.compile(r"^0x[0-9a-f]{64}$")

ELIGIBILITY_TYPES: Dict[str, List[Dict[str, str]]] = {
    "Eligibility": [
        {"name": "user", "type": "address"},
        {"name": "survey", "type": "address"},
        {"name": "nullifier", "type": "bytes32"},
        {"name": "deadline", "type": "uint256"},
        {"name": "chainId", "type": "uint256"},
    ],
}

_DOMAIN_FIELDS = [
    ("name", "string"),
    ("version", "string"),
    ("chainId", "uint256"),
    ("verifyingContract", "address"),
]


def build_domain(name: str, version: str, chain_id: int, verifying_contract: Optional[str]) -> Dict[str, Any]:
    domain: Dict[str, Any] = {"name": name, "version": version, "chainId": int(chain_id)}
    if verifying_contract:
        domain["verifyingContract"] = verifying_contract.lower()
    return domain


def domain_descriptor(name: str, version: str, chain_id: int, verifying_contract: Optional[str]) -> Dict[str, Any]:
    """Signing-domain descriptor published for clients and dashboards."""
    return {
        "eip712": {
            "domain": build_domain(name, version, chain_id, verifying_contract),
            "types": ELIGIBILITY_TYPES,
        },
    }


def _domain_types(domain: Dict[str, Any]) -> List[Dict[str, str]]:
    return [{"name": n, "type": t} for n, t in _DOMAIN_FIELDS if n in domain]


def _address(value: str, label: str) -> str:
    value = str(value or "").strip()
    if not ADDRESS_RE.match(value):
        raise InvalidInputError(f"bad {label}")
    return value.lower()


class EligibilitySigner:
    def __init__(
        self,
        private_key: str,
        domain_name: str,
        domain_version: str,
        chain_id: int,
        verifying_contract: Optional[str],
    ):
        self.domain = build_domain(domain_name, domain_version, chain_id, verifying_contract)
        self._account = None
        self.not_ready_reason = ""
        if not private_key:
            self.not_ready_reason = "ATTESTER_PRIVKEY not set"
        elif not verifying_contract or not ADDRESS_RE.match(verifying_contract):
            self.not_ready_reason = "Bad GATE_ADDR"
        else:
            try:
                self._account = Account.from_key(private_key)
            except (ValueError, TypeError) as e:
                self.not_ready_reason = f"invalid ATTESTER_PRIVKEY: {type(e).__name__}"
        if self._account is not None:
            logger.info("Signer: ready as %s on chain %s", self._account.address, chain_id)
        else:
            logger.warning("Signer: not ready (%s)", self.not_ready_reason)

    @property
    def ready(self) -> bool:
        return self._account is not None

    @property
    def address(self) -> Optional[str]:
        return self._account.address if self._account is not None else None

    def resolve_domain(self, verifying_contract: Optional[str] = None,
                       chain_id: Optional[int] = None) -> Dict[str, Any]:
        domain = dict(self.domain)
        if verifying_contract:
            domain["verifyingContract"] = _address(verifying_contract, "verifyingContract")
        if chain_id is not None:
            if int(chain_id) <= 0:
                raise InvalidInputError("bad chainId")
            domain["chainId"] = int(chain_id)
        return domain

    def typed_data(self, subject: str, survey: str, pseudonym: str, expiry: int,
                   domain: Dict[str, Any]) -> Dict[str, Any]:
        """Full EIP-712 payload; ``nullifier`` is carried as raw bytes."""
        return {
            "types": {"EIP712Domain": _domain_types(domain), **ELIGIBILITY_TYPES},
            "primaryType": "Eligibility",
            "domain": domain,
            "message": {
                "user": subject,
                "survey": survey,
                "nullifier": bytes.fromhex(pseudonym[2:]),
                "deadline": int(expiry),
                "chainId": int(domain["chainId"]),
            },
        }

    def sign(
        self,
        subject: str,
        survey: str,
        pseudonym: str,
        expiry: int,
        verifying_contract: Optional[str] = None,
        chain_id: Optional[int] = None,
        now: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Sign an Eligibility struct.

        Returns:
            Dict with signature, digest, domain, types and message

        Raises:
            SignerNotReadyError: No usable key or gate configured
            InvalidInputError: Malformed addresses or pseudonym, or expiry not in the future
        """
        if not self.ready:
            raise SignerNotReadyError("signer not ready")

        subject = _address(subject, "user")
        survey = _address(survey, "survey")
        pseudonym = str(pseudonym or "").strip().lower()
        if not PSEUDONYM_RE.match(pseudonym):
            raise InvalidInputError("bad nullifier")
        current = now_sec() if now is None else now
        try:
            expiry = int(expiry)
        except (TypeError, ValueError):
            raise InvalidInputError("bad deadline") from None
        if expiry <= current:
            raise InvalidInputError("bad deadline")

        domain = self.resolve_domain(verifying_contract, chain_id)
        signable = encode_typed_data(full_message=self.typed_data(subject, survey, pseudonym, expiry, domain))
        signed = Account.sign_message(signable, private_key=self._account.key)

        logger.info("Signer: signed eligibility for survey %s (expiry %d)", survey, expiry)
        return {
            "signature": to_hex(signed.signature),
            "digest": to_hex(signed.message_hash),
            "domain": domain,
            "types": ELIGIBILITY_TYPES,
            "message": {
                "user": subject,
                "survey": survey,
                "nullifier": pseudonym,
                "deadline": expiry,
                "chainId": domain["chainId"],
            },
        }
