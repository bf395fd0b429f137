"""Command line tests."""

import json
from pathlib import Path

import pytest
from click.testing import CliRunner
from cryptography.hazmat.primitives import serialization

from signpass import PemCredentialProvider, SigningKeyError
from signpass.cli import cli


def _pem(cert) -> bytes:
    return cert.public_bytes(serialization.Encoding.PEM)


@pytest.fixture
def pem_files(pki, tmp_path: Path):
    """Key, chain and anchor PEM files for the test PKI."""
    keys = tmp_path / "keys"
    keys.mkdir()
    key_path = keys / "pass.example.key.pem"
    key_path.write_bytes(pki.leaf_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.BestAvailableEncryption(b"secret"),
    ))
    chain_path = keys / "pass.example.chain.pem"
    chain_path.write_bytes(_pem(pki.leaf) + _pem(pki.inter))
    anchor_path = keys / "roots.pem"
    anchor_path.write_bytes(_pem(pki.root))
    other_path = keys / "other.pem"
    other_path.write_bytes(_pem(pki.other_root))
    return {"key": key_path, "chain": chain_path, "anchor": anchor_path, "other": other_path, "dir": keys}


def _sign(runner, pass_dir, out, pem_files, *extra):
    return runner.invoke(cli, [
        "sign", "-p", str(pass_dir), "-o", str(out),
        "-k", str(pem_files["key"]), "-c", str(pem_files["chain"]),
        "--password", "secret", *extra,
    ])


class TestCli:
    """signpass sign / verify."""

    def test_sign_and_verify(self, pass_dir, tmp_path, pem_files):
        runner = CliRunner()
        out = tmp_path / "Sample.pkpass"

        result = _sign(runner, pass_dir, out, pem_files, "--zip")
        assert result.exit_code == 0, result.output
        assert "Signed 2 files as CN=Pass Signer" in result.stdout

        result = runner.invoke(cli, ["verify", "-p", str(out), "-a", str(pem_files["anchor"])])
        assert result.exit_code == 0, result.output
        assert "ACCEPTED" in result.stdout

    def test_verify_json_rejected(self, pass_dir, tmp_path, pem_files):
        runner = CliRunner()
        out = tmp_path / "Sample.signed"
        assert _sign(runner, pass_dir, out, pem_files).exit_code == 0
        (out / "b.txt").write_bytes(b"worlds")

        result = runner.invoke(cli, ["verify", "-p", str(out), "-a", str(pem_files["anchor"]), "--json"])
        assert result.exit_code == 1
        doc = json.loads(result.stdout)
        assert doc["accepted"] is False
        assert [v["path"] for v in doc["violations"]] == ["b.txt"]

    def test_verify_untrusted(self, pass_dir, tmp_path, pem_files):
        runner = CliRunner()
        out = tmp_path / "Sample.signed"
        assert _sign(runner, pass_dir, out, pem_files).exit_code == 0

        result = runner.invoke(cli, ["verify", "-p", str(out), "-a", str(pem_files["other"])])
        assert result.exit_code == 1
        assert "UNTRUSTED_SIGNER" in result.stdout

    def test_wrong_password(self, pass_dir, tmp_path, pem_files):
        runner = CliRunner()
        result = runner.invoke(cli, [
            "sign", "-p", str(pass_dir), "-o", str(tmp_path / "out"),
            "-k", str(pem_files["key"]), "-c", str(pem_files["chain"]),
            "--password", "wrong",
        ])
        assert result.exit_code == 1
        assert not (tmp_path / "out").exists()

    def test_existing_output_needs_force(self, pass_dir, tmp_path, pem_files):
        runner = CliRunner()
        out = tmp_path / "Sample.signed"
        assert _sign(runner, pass_dir, out, pem_files).exit_code == 0
        assert _sign(runner, pass_dir, out, pem_files).exit_code == 1
        assert _sign(runner, pass_dir, out, pem_files, "--force").exit_code == 0


class TestPemCredentialProvider:
    """Credential lookup by identifier."""

    def test_load(self, pki, pem_files):
        provider = PemCredentialProvider(pem_files["dir"], password="secret")
        creds = provider.load("pass.example")
        assert creds.certificate_chain == (pki.leaf, pki.inter)

    def test_unknown_identifier(self, pem_files):
        with pytest.raises(SigningKeyError):
            PemCredentialProvider(pem_files["dir"]).load("missing")

    def test_rejects_path_like_identifier(self, pem_files):
        with pytest.raises(SigningKeyError):
            PemCredentialProvider(pem_files["dir"]).load("../keys/pass.example")
