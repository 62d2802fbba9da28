"""JSON ABI for the data market contract surface used by this service.

Admin toggles (whitelist, model registry, verifier assignment) are
included so the contract object can pass them through, but nothing in
the sync core calls them.
"""

from __future__ import annotations

from typing import Any


def _param(name: str, type_: str, indexed: bool | None = None) -> dict[str, Any]:
    p: dict[str, Any] = {"name": name, "type": type_}
    if indexed is not None:
        p["indexed"] = indexed
    return p


def _event(name: str, *params: tuple[str, str, bool]) -> dict[str, Any]:
    return {
        "type": "event",
        "name": name,
        "anonymous": False,
        "inputs": [_param(n, t, i) for n, t, i in params],
    }


def _function(
    name: str,
    inputs: list[tuple[str, str]],
    outputs: list[tuple[str, str]] | None = None,
    mutability: str = "nonpayable",
) -> dict[str, Any]:
    return {
        "type": "function",
        "name": name,
        "stateMutability": mutability,
        "inputs": [_param(n, t) for n, t in inputs],
        "outputs": [_param(n, t) for n, t in (outputs or [])],
    }


REQUEST_FIELDS: list[tuple[str, str]] = [
    ("id", "uint256"),
    ("buyer", "address"),
    ("budget", "uint256"),
    ("formatsMask", "uint8"),
    ("description", "string"),
    ("status", "uint8"),
    ("qualityScore", "uint8"),
    ("qualityReportCid", "string"),
    ("finalizedSubmissionId", "uint256"),
    ("createdAt", "uint256"),
]

SUBMISSION_FIELDS: list[tuple[str, str]] = [
    ("id", "uint256"),
    ("requestId", "uint256"),
    ("seller", "address"),
    ("model", "address"),
    ("format", "uint8"),
    ("fileSize", "uint256"),
    ("sampleCount", "uint256"),
    ("fileExtensions", "string"),
    ("datasetReference", "string"),
    ("status", "uint8"),
    ("qualityChecked", "bool"),
    ("createdAt", "uint256"),
]

MARKET_ABI: list[dict[str, Any]] = [
    # Events
    _event(
        "RequestCreated",
        ("requestId", "uint256", True),
        ("buyer", "address", True),
        ("budget", "uint256", False),
        ("formatsMask", "uint8", False),
        ("description", "string", False),
    ),
    _event(
        "SubmissionSubmitted",
        ("submissionId", "uint256", True),
        ("requestId", "uint256", True),
        ("seller", "address", True),
        ("model", "address", False),
        ("format", "uint8", False),
        ("fileSize", "uint256", False),
        ("sampleCount", "uint256", False),
        ("fileExtensions", "string", False),
        ("datasetReference", "string", False),
    ),
    _event(
        "SubmissionVerified",
        ("submissionId", "uint256", True),
        ("requestId", "uint256", True),
        ("approved", "bool", False),
        ("qualityScore", "uint8", False),
        ("qualityReportCid", "string", False),
    ),
    _event(
        "PaymentReleased",
        ("submissionId", "uint256", True),
        ("seller", "address", True),
        ("amount", "uint256", False),
    ),
    _event(
        "RefundIssued",
        ("requestId", "uint256", True),
        ("buyer", "address", True),
        ("amount", "uint256", False),
    ),
    # Reads
    _function("owner", [], [("", "address")], "view"),
    _function("qualityVerifier", [], [("", "address")], "view"),
    _function("requests", [("", "uint256")], REQUEST_FIELDS, "view"),
    _function("submissions", [("", "uint256")], SUBMISSION_FIELDS, "view"),
    _function("getBuyerRequests", [("buyer", "address")], [("", "uint256[]")], "view"),
    _function("getSellerSubmissions", [("seller", "address")], [("", "uint256[]")], "view"),
    _function("getVerifierSubmissions", [("verifier", "address")], [("", "uint256[]")], "view"),
    _function("totalEscrowed", [], [("", "uint256")], "view"),
    # Writes
    _function(
        "createRequest",
        [("formatsMask", "uint8"), ("description", "string")],
        [("", "uint256")],
        "payable",
    ),
    _function(
        "submitDataset",
        [
            ("requestId", "uint256"),
            ("format", "uint8"),
            ("fileSize", "uint256"),
            ("sampleCount", "uint256"),
            ("fileExtensions", "string"),
            ("datasetReference", "string"),
            ("model", "address"),
        ],
        [("", "uint256")],
    ),
    _function(
        "verifySubmission",
        [
            ("submissionId", "uint256"),
            ("approved", "bool"),
            ("qualityScore", "uint8"),
            ("qualityReportCid", "string"),
        ],
    ),
    _function("cancelRequest", [("requestId", "uint256")]),
    # Admin passthrough
    _function("setQualityVerifier", [("verifier", "address")]),
    _function("updateSellerWhitelist", [("seller", "address"), ("allowed", "bool")]),
    _function("updateModelRegistry", [("model", "address"), ("allowed", "bool")]),
    _function("setWhitelistEnabled", [("enabled", "bool")]),
    _function("setModelRegistryEnabled", [("enabled", "bool")]),
    _function("setAllowModelSelfVerify", [("allow", "bool")]),
]

EVENT_NAMES: tuple[str, ...] = tuple(
    item["name"] for item in MARKET_ABI if item["type"] == "event"
)


__all__ = ["EVENT_NAMES", "MARKET_ABI", "REQUEST_FIELDS", "SUBMISSION_FIELDS"]
