import asyncio

import pytest

from hub_common.exceptions import AttestationInvalid, DecodeError, NetworkFailure, SignatureInvalid
from manifest_svc.codec import EncodedManifest, decode_manifest, encode_manifest
from manifest_svc.domain_verification import (
    DomainVerifier,
    VerificationReason,
    attestation_message,
)
from tests.fixtures.helpers import (
    StubFetcher,
    attestation_for,
    make_keys,
    make_manifest,
    trust_file,
    trust_file_url,
)

DOMAIN = "validator.example.com"


def _verifier(responses=None):
    fetcher = StubFetcher(responses)
    return DomainVerifier(fetcher), fetcher


def test_attestation_message_format():
    assert attestation_message("a.example", "nKEY") == b"[domain-attestation-blob:a.example:nKEY]"


@pytest.mark.asyncio
async def test_verified_domain():
    keys = make_keys()
    verifier, fetcher = _verifier(
        {trust_file_url(DOMAIN): trust_file((keys.master_key, attestation_for(keys, DOMAIN)))}
    )

    result = await verifier.verify(EncodedManifest(make_manifest(keys, domain=DOMAIN)))

    assert result.verified
    assert result.verified_manifest_signature
    assert result.reason is VerificationReason.VERIFIED
    assert result.manifest.master_key == keys.master_key
    assert fetcher.calls == [trust_file_url(DOMAIN)]
    assert result.ensure_verified() is result.manifest


@pytest.mark.asyncio
async def test_missing_master_key():
    keys = make_keys()
    manifest = decode_manifest(
        encode_manifest(sequence=1, signing_public_key=keys.signing_public, signature=b"\x01" * 64)
    )
    verifier, fetcher = _verifier()

    result = await verifier.verify(manifest)

    assert not result.verified
    assert not result.verified_manifest_signature
    assert result.reason is VerificationReason.NO_MASTER_KEY
    assert "no identity key" in result.message
    assert fetcher.calls == []


@pytest.mark.asyncio
async def test_bad_signature_returns_manifest_for_persistence():
    keys = make_keys()
    good = decode_manifest(make_manifest(keys, domain=DOMAIN))
    forged = decode_manifest(
        encode_manifest(
            sequence=good.sequence,
            signing_public_key=keys.signing_public,
            master_public_key=keys.master_public,
            domain=DOMAIN,
            signature=b"\x00" * 64,
            master_signature=good.master_signature,
        )
    )
    verifier, fetcher = _verifier()

    result = await verifier.verify(forged)

    assert not result.verified
    assert not result.verified_manifest_signature
    assert result.reason is VerificationReason.BAD_SIGNATURE
    assert result.manifest.signing_key == keys.signing_key
    assert fetcher.calls == []
    with pytest.raises(SignatureInvalid):
        result.ensure_verified()


@pytest.mark.asyncio
async def test_bad_master_cross_signature_is_rejected():
    keys = make_keys()
    good = decode_manifest(make_manifest(keys, domain=DOMAIN))
    forged = encode_manifest(
        sequence=good.sequence,
        signing_public_key=keys.signing_public,
        master_public_key=keys.master_public,
        domain=DOMAIN,
        signature=good.signature,
        master_signature=b"\x00" * 64,
    )
    verifier, _ = _verifier()

    result = await verifier.verify(EncodedManifest(forged))

    assert not result.verified_manifest_signature
    assert result.reason is VerificationReason.BAD_SIGNATURE


@pytest.mark.asyncio
async def test_no_domain_claimed():
    verifier, fetcher = _verifier()

    result = await verifier.verify(EncodedManifest(make_manifest(make_keys())))

    assert not result.verified
    assert result.verified_manifest_signature
    assert result.reason is VerificationReason.NO_DOMAIN
    assert "no domain claimed" in result.message
    assert fetcher.calls == []
    with pytest.raises(AttestationInvalid):
        result.ensure_verified()


@pytest.mark.asyncio
async def test_fetch_failure_cites_detail():
    verifier, _ = _verifier()

    result = await verifier.verify(EncodedManifest(make_manifest(make_keys(), domain=DOMAIN)))

    assert not result.verified
    assert result.verified_manifest_signature
    assert result.reason is VerificationReason.FETCH_FAILED
    assert "Failed to fetch trust file" in result.message
    assert "404" in result.message
    assert not result.definitive


@pytest.mark.asyncio
async def test_fetch_timeout_is_a_verification_failure():
    verifier, _ = _verifier({trust_file_url(DOMAIN): asyncio.TimeoutError("slow")})

    result = await verifier.verify(EncodedManifest(make_manifest(make_keys(), domain=DOMAIN)))

    assert result.reason is VerificationReason.FETCH_FAILED


@pytest.mark.asyncio
async def test_unparseable_trust_file():
    verifier, _ = _verifier({trust_file_url(DOMAIN): "VALIDATORS = [ this is not toml"})

    result = await verifier.verify(EncodedManifest(make_manifest(make_keys(), domain=DOMAIN)))

    assert result.reason is VerificationReason.FETCH_FAILED


@pytest.mark.asyncio
async def test_trust_file_without_validators_section():
    verifier, _ = _verifier({trust_file_url(DOMAIN): trust_file()})

    result = await verifier.verify(EncodedManifest(make_manifest(make_keys(), domain=DOMAIN)))

    assert not result.verified
    assert result.reason is VerificationReason.MALFORMED_TRUST_FILE
    assert "malformed trust file" in result.message


@pytest.mark.asyncio
async def test_no_matching_key():
    keys, other = make_keys(), make_keys()
    verifier, _ = _verifier(
        {trust_file_url(DOMAIN): trust_file((other.master_key, attestation_for(other, DOMAIN)))}
    )

    result = await verifier.verify(EncodedManifest(make_manifest(keys, domain=DOMAIN)))

    assert result.reason is VerificationReason.KEY_NOT_LISTED
    assert "no matching key in trust file" in result.message
    assert result.definitive


@pytest.mark.asyncio
async def test_any_bad_matching_attestation_rejects_the_claim():
    keys = make_keys()
    verifier, _ = _verifier(
        {
            trust_file_url(DOMAIN): trust_file(
                (keys.master_key, attestation_for(keys, DOMAIN)),
                (keys.master_key, "ZZ-not-hex"),
            )
        }
    )

    result = await verifier.verify(EncodedManifest(make_manifest(keys, domain=DOMAIN)))

    assert not result.verified
    assert result.reason is VerificationReason.ATTESTATION_INVALID
    assert "Invalid attestation" in result.message


@pytest.mark.asyncio
async def test_attestation_for_other_domain_is_rejected():
    keys = make_keys()
    verifier, _ = _verifier(
        {trust_file_url(DOMAIN): trust_file((keys.master_key, attestation_for(keys, "elsewhere.example")))}
    )

    result = await verifier.verify(EncodedManifest(make_manifest(keys, domain=DOMAIN)))

    assert result.reason is VerificationReason.ATTESTATION_INVALID


@pytest.mark.asyncio
async def test_flipping_one_attestation_byte_flips_the_verdict():
    keys = make_keys()
    attestation = attestation_for(keys, DOMAIN)
    raw = bytearray(bytes.fromhex(attestation))
    raw[10] ^= 0x01
    manifest = EncodedManifest(make_manifest(keys, domain=DOMAIN))

    good, _ = _verifier({trust_file_url(DOMAIN): trust_file((keys.master_key, attestation))})
    tampered, _ = _verifier({trust_file_url(DOMAIN): trust_file((keys.master_key, raw.hex().upper()))})

    assert (await good.verify(manifest)).verified
    assert not (await tampered.verify(manifest)).verified


@pytest.mark.asyncio
async def test_verdict_is_deterministic():
    keys = make_keys()
    responses = {trust_file_url(DOMAIN): trust_file((keys.master_key, attestation_for(keys, DOMAIN)))}
    manifest = EncodedManifest(make_manifest(keys, domain=DOMAIN))

    first = await DomainVerifier(StubFetcher(responses)).verify(manifest)
    second = await DomainVerifier(StubFetcher(responses)).verify(manifest)

    assert first.to_dict() == second.to_dict()


@pytest.mark.asyncio
async def test_secp256k1_master_key_attestation():
    keys = make_keys(master_type="secp256k1")
    verifier, _ = _verifier(
        {trust_file_url(DOMAIN): trust_file((keys.master_key, attestation_for(keys, DOMAIN)))}
    )

    result = await verifier.verify(EncodedManifest(make_manifest(keys, domain=DOMAIN)))

    assert result.verified


@pytest.mark.asyncio
async def test_custom_trust_file_path():
    keys = make_keys()
    fetcher = StubFetcher(
        {f"https://{DOMAIN}/custom.toml": trust_file((keys.master_key, attestation_for(keys, DOMAIN)))}
    )
    verifier = DomainVerifier(fetcher, "/custom.toml")

    result = await verifier.verify(EncodedManifest(make_manifest(keys, domain=DOMAIN)))

    assert result.verified


@pytest.mark.asyncio
async def test_undecodable_manifest_raises_decode_error():
    verifier, _ = _verifier()
    with pytest.raises(DecodeError):
        await verifier.verify(EncodedManifest("%%%"))


@pytest.mark.asyncio
async def test_network_failure_from_fetcher_is_not_raised():
    keys = make_keys()
    verifier, _ = _verifier({trust_file_url(DOMAIN): NetworkFailure("connection reset")})

    result = await verifier.verify(EncodedManifest(make_manifest(keys, domain=DOMAIN)))

    assert "connection reset" in result.message
