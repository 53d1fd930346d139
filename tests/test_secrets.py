import pytest

from pipewright.errors import AccessDenied, SecretNotFound
from pipewright.secrets import MASK, EnvSecretStore, MappingSecretStore, Redactor, SecretProvider

from conftest import make_definition, make_job


def test_granted_job_resolves_secret():
    provider = SecretProvider(MappingSecretStore({"SONAR_TOKEN": "abc"}), grants={"SONAR_TOKEN": ["sonar_analysis"]})
    assert provider.resolve(["SONAR_TOKEN"], scope="sonar_analysis") == {"SONAR_TOKEN": "abc"}


def test_other_jobs_are_denied():
    provider = SecretProvider(MappingSecretStore({"SONAR_TOKEN": "abc"}), grants={"SONAR_TOKEN": ["sonar_analysis"]})
    with pytest.raises(AccessDenied) as exc:
        provider.resolve(["SONAR_TOKEN"], scope="deploy")
    assert exc.value.names == ["SONAR_TOKEN"]
    assert exc.value.scope == "deploy"


def test_secret_absent_from_grants_is_denied_to_everyone():
    provider = SecretProvider(MappingSecretStore({"X": "1"}), grants={})
    assert not provider.allowed("X", "build")
    with pytest.raises(AccessDenied):
        provider.resolve(["X"], scope="build")


def test_missing_value_raises_not_found():
    provider = SecretProvider(MappingSecretStore({}))
    with pytest.raises(SecretNotFound):
        provider.resolve(["GONE"], scope="build")


def test_no_names_resolves_to_empty():
    provider = SecretProvider(MappingSecretStore({}), grants={})
    assert provider.resolve([], scope="build") == {}


def test_grants_from_definition():
    definition = make_definition(
        make_job("build", secrets=["NUGET"]),
        make_job("sonar", ["build"], secrets=["SONAR_TOKEN", "NUGET"]),
        make_job("deploy", ["sonar"]),
    )
    provider = SecretProvider.from_definition(MappingSecretStore({"NUGET": "n", "SONAR_TOKEN": "s"}), definition)

    assert provider.allowed("NUGET", "build")
    assert provider.allowed("NUGET", "sonar")
    assert provider.allowed("SONAR_TOKEN", "sonar")
    assert not provider.allowed("SONAR_TOKEN", "build")
    assert not provider.allowed("NUGET", "deploy")


def test_env_store_uses_prefix():
    store = EnvSecretStore(environ={"PIPEWRIGHT_SECRET_TOKEN": "t", "TOKEN": "plain"})
    assert store.get("TOKEN") == "t"
    assert store.get("OTHER") is None


def test_redactor_masks_longest_first():
    redact = Redactor(["abc", "abcdef"])
    assert redact("x abcdef y abc") == f"x {MASK} y {MASK}"


def test_redactor_ignores_trivial_values():
    redact = Redactor(["a", ""])
    assert redact("banana") == "banana"
