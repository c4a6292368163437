import pytest

from conftest import FakeRegistry
from crate_apply.errors import SystemicFailure
from crate_apply.registry.client import RegistryPage
from crate_apply.resolver import SkippedTarget, TargetResolver
from crate_apply.targets import Exact, Latest, Target, parse_specifiers


def _resolve(registry: FakeRegistry, *raw: str, retries: int = 2):
    return TargetResolver(registry, enumeration_retries=retries).resolve(parse_specifiers(list(raw)))


def test_name_resolves_to_latest(registry: FakeRegistry) -> None:
    resolution = _resolve(registry, "left_pad")
    assert resolution.worklist == [Target("left_pad", Latest(), "1.0.0")]
    assert resolution.skipped == []


def test_exact_version_is_confirmed(registry: FakeRegistry) -> None:
    resolution = _resolve(registry, "left_pad=0.9.0")
    assert resolution.worklist == [Target("left_pad", Exact("0.9.0"), "0.9.0")]


def test_exact_and_latest_of_same_version_dedupe(registry: FakeRegistry) -> None:
    resolution = _resolve(registry, "left_pad=1.0.0", "left_pad")
    assert [target.key for target in resolution.worklist] == [("left_pad", "1.0.0")]
    assert resolution.worklist[0].constraint == Exact("1.0.0")


def test_different_versions_are_distinct_targets(registry: FakeRegistry) -> None:
    resolution = _resolve(registry, "left_pad=0.9.0", "left_pad")
    assert [target.key for target in resolution.worklist] == [
        ("left_pad", "0.9.0"),
        ("left_pad", "1.0.0"),
    ]


def test_unknown_version_is_skipped_not_fatal(registry: FakeRegistry) -> None:
    resolution = _resolve(registry, "left_pad=7.0.0", "right_pad")
    assert [target.name for target in resolution.worklist] == ["right_pad"]
    assert len(resolution.skipped) == 1
    skipped = resolution.skipped[0]
    assert skipped.target == Target("left_pad", Exact("7.0.0"))
    assert "7.0.0" in skipped.reason


def test_unknown_package_is_skipped(registry: FakeRegistry) -> None:
    resolution = _resolve(registry, "nope")
    assert resolution.worklist == []
    assert resolution.skipped[0].target == Target("nope", Latest())
    assert "not in registry" in resolution.skipped[0].reason
    assert not resolution.skipped[0].transient


def test_registry_error_skips_only_that_specifier(registry: FakeRegistry) -> None:
    registry.broken.add("left_pad")
    resolution = _resolve(registry, "left_pad", "right_pad")
    assert [target.name for target in resolution.worklist] == ["right_pad"]
    assert resolution.skipped[0].reason.startswith("registry error")
    assert resolution.skipped[0].transient


def test_wildcard_enumerates_every_page() -> None:
    registry = FakeRegistry({"a": ["1.0.0"], "b": ["2.0.0"], "c": ["3.0.0"]}, page_size=1)
    resolution = _resolve(registry, "*")
    assert [target.key for target in resolution.worklist] == [("a", "1.0.0"), ("b", "2.0.0"), ("c", "3.0.0")]


@pytest.mark.parametrize("page_size", [1, 2, 5])
def test_wildcard_over_two_packages_gives_two_targets(page_size: int) -> None:
    registry = FakeRegistry({"left_pad": ["1.0.0"], "right_pad": ["2.0.0"]}, page_size=page_size)
    assert len(_resolve(registry, "*").worklist) == 2


def test_wildcard_and_name_dedupe(registry: FakeRegistry) -> None:
    resolution = _resolve(registry, "left_pad", "*")
    assert [target.key for target in resolution.worklist] == [("left_pad", "1.0.0"), ("right_pad", "2.0.0")]


def test_wildcard_uses_listing_hints() -> None:
    class _HintingRegistry(FakeRegistry):
        def list_pages(self, cursor=None):
            yield RegistryPage(names=["a", "b"], next_cursor=None, latest={"a": "9.9.9"})

    registry = _HintingRegistry({"a": ["1.0.0"], "b": ["2.0.0"]})
    resolution = _resolve(registry, "*")
    assert [target.key for target in resolution.worklist] == [("a", "9.9.9"), ("b", "2.0.0")]
    assert registry.latest_calls == ["b"]


def test_failed_page_is_retried_from_last_cursor() -> None:
    registry = FakeRegistry({"a": ["1"], "b": ["1"], "c": ["1"], "d": ["1"]}, page_size=1)
    registry.page_failures = {2: 2}
    resolution = _resolve(registry, "*", retries=2)
    assert [target.name for target in resolution.worklist] == ["a", "b", "c", "d"]


def test_enumeration_gives_up_after_retries() -> None:
    registry = FakeRegistry({"a": ["1"], "b": ["1"], "c": ["1"]}, page_size=1)
    registry.page_failures = {1: 5}
    resolver = TargetResolver(registry, enumeration_retries=2)
    seen = []
    with pytest.raises(SystemicFailure, match="enumeration failed"):
        for item in resolver.iter_resolve(parse_specifiers(["*"])):
            seen.append(item)
    assert [item.name for item in seen if isinstance(item, Target)] == ["a"]


def test_iter_resolve_is_lazy() -> None:
    class _EndlessRegistry(FakeRegistry):
        def list_pages(self, cursor=None):
            index = 0
            while True:
                yield RegistryPage(names=[f"crate{index}"], next_cursor=str(index + 1), latest={f"crate{index}": "1.0.0"})
                index += 1

    resolver = TargetResolver(_EndlessRegistry({}))
    stream = resolver.iter_resolve(parse_specifiers(["*"]))
    first = [next(stream) for _ in range(3)]
    assert [item.name for item in first] == ["crate0", "crate1", "crate2"]
    assert not any(isinstance(item, SkippedTarget) for item in first)
