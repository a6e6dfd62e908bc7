import base64
import json
import os

# Must be set before waflow.core.config is imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["JWT_SECRET_KEY"] = "test-secret"
os.environ["WHATSAPP_PHONE_ID"] = ""
os.environ["WHATSAPP_TOKEN"] = ""
os.environ["WHATSAPP_BUSINESS_ACCOUNT_ID"] = ""
os.environ["WHATSAPP_FLOWS_PRIVATE_KEY"] = ""
os.environ.pop("DEFAULT_OWNER_ID", None)

from types import SimpleNamespace
from unittest.mock import AsyncMock, Mock

import pytest
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

import waflow.db.base  # noqa: F401  registers every model
from waflow.db.session import SessionLocal, engine
from waflow.models.base import Base
from waflow.models.contact import Contact
from waflow.services.sandbox import FunctionRunResult
from waflow.services.sender import SendResult

OWNER = "owner-1"


@pytest.fixture
def db():
    """Fresh in-memory schema per test."""
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def contact(db):
    c = Contact(owner_id=OWNER, wa_id="919876543210", phone="+919876543210", name="Asha")
    db.add(c)
    db.commit()
    db.refresh(c)
    return c


@pytest.fixture
def sender():
    """Stand-in for WhatsAppSender; every send succeeds."""
    s = Mock()
    s.send_template = AsyncMock(return_value=SendResult(True, "wamid.template"))
    s.send_text = AsyncMock(return_value=SendResult(True, "wamid.text"))
    s.send_custom_message = AsyncMock(return_value=SendResult(True, "wamid.custom"))
    return s


@pytest.fixture
def sender_factory(sender):
    return Mock(return_value=sender)


@pytest.fixture
def runner():
    return AsyncMock(return_value=FunctionRunResult(output={"total": 42}, logs=["ran"], duration_ms=3))


@pytest.fixture(scope="session")
def rsa_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture
def bus():
    return SimpleNamespace(publish=Mock(return_value=0))


def encrypt_like_client(payload, public_key, aes_key=None, iv=None):
    """Build a request body the way WhatsApp does"""
    aes_key = aes_key or os.urandom(16)
    iv = iv or os.urandom(16)
    wrapped = public_key.encrypt(
        aes_key,
        padding.OAEP(mgf=padding.MGF1(algorithm=hashes.SHA256()), algorithm=hashes.SHA256(), label=None),
    )
    sealed = AESGCM(aes_key).encrypt(iv, json.dumps(payload).encode(), None)
    body = {
        "encrypted_aes_key": base64.b64encode(wrapped).decode(),
        "encrypted_flow_data": base64.b64encode(sealed).decode(),
        "initial_vector": base64.b64encode(iv).decode(),
    }
    return body, aes_key, iv
