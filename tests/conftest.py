"""
Shared fixtures for the trade security test suites

Key Components:
1. Throwaway file-backed SQLite database per test (threads need a real file)
2. Recording fakes for the carrier gateway and notification dispatcher
3. In-memory user directory with two brand-new users and their addresses
4. Factories that drive a trade to a given lifecycle stage
"""

import logging
import threading
from typing import Any, Dict, List, Tuple

import pytest

from database import build_engine, build_session_factory
from models import Base, TrustProfile
from services.collaborators import CarrierGateway, InMemoryUserDirectory, NotificationDispatcher
from services.redirection_engine import RedirectionEngine
from services.trade_security_service import TradeSecurityService
from services.trust_risk_engine import TrustRiskEngine
from utils.pii_protection import AddressEncryption, PostalAddress

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

ALICE = "alice"
BOB = "bob"

ALICE_ADDRESS = PostalAddress(
    recipient_name="Alice Martin",
    street="12 Rue des Lilas",
    postal_code="69003",
    city="Lyon",
    country="France",
    additional_info="Bâtiment B, 2e étage",
    phone="+33 6 12 34 56 78",
)

BOB_ADDRESS = PostalAddress(
    recipient_name="Bob Durand",
    street="4 Quai de la Fosse",
    postal_code="44000",
    city="Nantes",
    country="France",
)


class RecordingCarrierGateway(CarrierGateway):
    """Captures every destination handed to the carrier"""

    def __init__(self):
        self.calls: List[Tuple[str, PostalAddress, str, str]] = []
        self._lock = threading.Lock()

    def notify_real_destination(self, code, address, trade_id, direction):
        with self._lock:
            self.calls.append((code, address, trade_id, direction))

    def calls_for(self, code: str) -> list:
        return [call for call in self.calls if call[0] == code]


class RecordingNotifier(NotificationDispatcher):
    def __init__(self):
        self.messages: List[Tuple[str, str, Dict[str, Any]]] = []

    def notify(self, user_id, event, payload):
        self.messages.append((user_id, event, payload))

    def events_for(self, user_id: str) -> List[str]:
        return [event for recipient, event, _ in self.messages if recipient == user_id]


@pytest.fixture
def db_engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'trade_security.db'}")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return build_session_factory(db_engine)


@pytest.fixture
def encryption():
    return AddressEncryption([AddressEncryption.generate_key()])


@pytest.fixture
def carrier():
    return RecordingCarrierGateway()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def directory():
    users = InMemoryUserDirectory()
    users.register(ALICE, address=ALICE_ADDRESS)
    users.register(BOB, address=BOB_ADDRESS)
    return users


@pytest.fixture
def redirection_engine(session_factory, encryption, carrier):
    return RedirectionEngine(session_factory, encryption=encryption, carrier_gateway=carrier)


@pytest.fixture
def trust_engine(directory):
    return TrustRiskEngine(directory)


@pytest.fixture
def trade_service(session_factory, directory, notifier, redirection_engine, trust_engine):
    return TradeSecurityService(
        session_factory,
        directory,
        notifier=notifier,
        redirection_engine=redirection_engine,
        trust_engine=trust_engine,
    )


@pytest.fixture
def make_established(session_factory, trust_engine):
    """Give a user a long clean history so they score in the LOW risk band"""

    def _make(user_id: str, successful: int = 20) -> int:
        with session_factory() as session:
            profile = trust_engine.get_or_create_profile(session, user_id)
            profile.successful_trades = successful
            profile.trust_score = TrustRiskEngine.compute_trust_score(profile)
            session.commit()
            return profile.trust_score

    return _make


@pytest.fixture
def load_profile(session_factory):
    def _load(user_id: str) -> TrustProfile:
        with session_factory() as session:
            return session.query(TrustProfile).filter(TrustProfile.user_id == user_id).one_or_none()

    return _load


@pytest.fixture
def advance_to(trade_service):
    """
    Drive a fresh alice -> bob trade to the requested stage.
    Photos are submitted only when the frozen constraints require them.
    """

    def _advance(stage: str):
        trade = trade_service.propose_trade(ALICE, BOB, "item-vinyl-collection", "item-film-camera")
        if stage == "proposed":
            return trade

        trade = trade_service.accept_trade(trade.trade_id, BOB)
        if stage == "accepted":
            return trade

        if trade.status.value == "verification_pending":
            trade_service.submit_photos(trade.trade_id, ALICE, ["photos/alice-1.jpg"])
            trade = trade_service.submit_photos(trade.trade_id, BOB, ["photos/bob-1.jpg"])
        if stage == "shipping_pending":
            return trade

        trade_service.confirm_shipment(trade.trade_id, ALICE, "TRACK-ALICE-001")
        trade = trade_service.confirm_shipment(trade.trade_id, BOB, "TRACK-BOB-001")
        if stage == "shipping_confirmed":
            return trade

        raise ValueError(f"Unknown stage {stage}")

    return _advance
