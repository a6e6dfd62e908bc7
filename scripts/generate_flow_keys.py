#!/usr/bin/env python3
# scripts/generate_flow_keys.py
"""
Generate the RSA key pair for the WhatsApp Flows data endpoint.

The public key is uploaded to Meta (Business Manager or the
whatsapp_business_encryption API); the private key goes into .env as
WHATSAPP_FLOWS_PRIVATE_KEY.

Usage:
    python scripts/generate_flow_keys.py [--passphrase SECRET] [--out DIR]
"""
import argparse
import sys
from pathlib import Path

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa


def main(argv=None):
    parser = argparse.ArgumentParser(description="Generate a WhatsApp Flows key pair")
    parser.add_argument("--passphrase", help="Encrypt the private key with this passphrase")
    parser.add_argument("--out", default=".", help="Directory for private.pem and public.pem")
    args = parser.parse_args(argv)

    out = Path(args.out)
    out.mkdir(parents=True, exist_ok=True)

    print("🔐 Generating 2048-bit RSA key pair...")
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)

    if args.passphrase:
        encryption = serialization.BestAvailableEncryption(args.passphrase.encode())
    else:
        encryption = serialization.NoEncryption()

    private_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        encryption,
    ).decode()
    public_pem = key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()

    (out / "private.pem").write_text(private_pem)
    (out / "public.pem").write_text(public_pem)

    print(f"   ✅ Keys written to {out.resolve()}")
    print("\n📌 Add to .env (single line):")
    print(f'   WHATSAPP_FLOWS_PRIVATE_KEY="{private_pem.strip().replace(chr(10), chr(92) + "n")}"')
    if args.passphrase:
        print("   WHATSAPP_FLOWS_PRIVATE_KEY_PASSPHRASE=<your passphrase>")
    print("\n📤 Upload public.pem to Meta for your phone number")
    return 0


if __name__ == "__main__":
    sys.exit(main())
