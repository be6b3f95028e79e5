import importlib


def _read_pyproject_version() -> str:
    import re
    from pathlib import Path

    txt = (Path(__file__).resolve().parents[1] / "pyproject.toml").read_text(encoding="utf-8")
    m = re.search(r"^version\s*=\s*\"([^\"]+)\"\s*$", txt, flags=re.MULTILINE)
    assert m, "Could not locate [project].version in pyproject.toml"
    return m.group(1)


def test_convenience_imports_work():
    import paywall_gateway

    assert hasattr(paywall_gateway, "PaywallGateway")
    assert hasattr(paywall_gateway, "create_app")

    from paywall_gateway import AccessVerifier, InMemoryLedger, PaywallClient, PaywallError  # noqa: F401

    importlib.reload(paywall_gateway)


def test_unknown_attribute_raises():
    import paywall_gateway

    try:
        paywall_gateway.DoesNotExist  # noqa: B018
    except AttributeError:
        return
    raise AssertionError("expected AttributeError")


def test_version_export_matches_pyproject():
    import paywall_gateway

    assert paywall_gateway.__version__ == _read_pyproject_version()
