"""
Event and getter ABIs consumed by the indexer.

Each event family is an ordered list of candidate schemas. The decoder tries
them in list order, so newer/richer variants come first and legacy variants
(renamed events, different ``indexed`` layouts) follow.
"""
from typing import Any, Dict, List, Sequence, Tuple

from src.data_models.indexer_schemas import EventKind


def _event(name: str, inputs: Sequence[Tuple[str, str, bool]]) -> Dict[str, Any]:
    return {
        "type": "event",
        "name": name,
        "anonymous": False,
        "inputs": [
            {"name": arg_name, "type": arg_type, "indexed": indexed}
            for arg_type, arg_name, indexed in inputs
        ],
    }


def _uint_getter(name: str) -> Dict[str, Any]:
    return {
        "type": "function",
        "name": name,
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint256"}],
    }


_DEPLOY_FIELDS = [
    ("address", "survey", True),
    ("address", "creator", True),
    ("uint256", "startTime", False),
    ("uint256", "endTime", False),
    ("uint8", "surveyType", False),
    ("bytes32", "metaHash", False),
]

SURVEY_DEPLOYED_EXTENDED = _event(
    "SurveyDeployed",
    _DEPLOY_FIELDS + [("uint256", "plannedReward", False), ("uint256", "initialValue", False)],
)
SURVEY_DEPLOYED = _event("SurveyDeployed", _DEPLOY_FIELDS)
# Older factories emitted the same payload under another name
FACTORY_SURVEY_CREATED = _event("SurveyCreated", _DEPLOY_FIELDS)

# Emitted by the survey contract itself
SURVEY_CREATED = _event("SurveyCreated", [("address", "creator", True), ("bytes32", "metaHash", False)])
QUESTION_ADDED = _event("QuestionAdded", [("uint256", "index", False), ("string", "text", False)])
VOTED = _event("Voted", [("address", "voter", True)])
VOTED_UNINDEXED = _event("Voted", [("address", "voter", False)])
FINALIZED = _event(
    "Finalized",
    [
        ("bytes32", "rulesHash", False),
        ("bytes32", "resultsHash", False),
        ("uint256", "claimOpenAt", False),
        ("uint256", "claimDeadline", False),
    ],
)
FINALIZED_LEGACY = _event("Finalized", [("bytes32", "rulesHash", False), ("bytes32", "resultsHash", False)])
PRIZE_FUNDED = _event("PrizeFunded", [("address", "funder", True), ("uint256", "amount", False)])
PRIZE_SWEPT = _event("PrizeSwept", [("address", "to", True), ("uint256", "amount", False)])

# (event ABI, domain kind), in priority order
FACTORY_CANDIDATES: List[Tuple[Dict[str, Any], EventKind]] = [
    (SURVEY_DEPLOYED_EXTENDED, EventKind.SURVEY_DEPLOYED),
    (SURVEY_DEPLOYED, EventKind.SURVEY_DEPLOYED),
    (FACTORY_SURVEY_CREATED, EventKind.SURVEY_DEPLOYED),
]

SURVEY_CANDIDATES: List[Tuple[Dict[str, Any], EventKind]] = [
    (SURVEY_CREATED, EventKind.SURVEY_DEPLOYED),
    (QUESTION_ADDED, EventKind.QUESTION_ADDED),
    (VOTED, EventKind.VOTED),
    (VOTED_UNINDEXED, EventKind.VOTED),
    (FINALIZED, EventKind.FINALIZED),
    (FINALIZED_LEGACY, EventKind.FINALIZED),
    (PRIZE_FUNDED, EventKind.PRIZE_FUNDED),
    (PRIZE_SWEPT, EventKind.PRIZE_SWEPT),
]

# Schedule getters; some builds named them start()/end()
START_GETTERS = ("startTime", "start")
END_GETTERS = ("endTime", "end")
SCHEDULE_GETTER_ABI = [_uint_getter(name) for name in START_GETTERS + END_GETTERS]
