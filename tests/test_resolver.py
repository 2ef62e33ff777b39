import pytest

from conftest import CARCH, PKGEXT, make_package
from repoforge.errors import BuildOrderError, MetadataError
from repoforge.meta import RecipeRecord
from repoforge.resolver import (ArtifactDependencyCache, DependencyResolver, External, LocalBatch,
                                build_package_filenames, build_provides_map, classify_dependency,
                                read_pkginfo_depends)


def record(path, names, deps=(), provides=(), per_package=None, arch=("x86_64",)):
    return RecipeRecord(path=path, package_names=list(names), architectures=list(arch),
                        pkgver="1.0", pkgrel="1", dependencies=list(deps),
                        provides_global=list(provides), provides_per_package=per_package or {})


def make_resolver(records, target_dir, reader=None):
    cache = ArtifactDependencyCache(reader) if reader else ArtifactDependencyCache()
    return DependencyResolver(build_package_filenames(records, CARCH, PKGEXT),
                              build_provides_map(records), str(target_dir), cache)


def test_provides_map_last_registration_wins():
    records = [
        record("/r/a", ["a-impl"], provides=["libbar"]),
        record("/r/b", ["b-impl"], provides=["libbar"]),
    ]
    provides = build_provides_map(records)
    assert provides["libbar"] == "b-impl"
    assert classify_dependency("libbar", build_package_filenames(records, CARCH, PKGEXT), provides) == LocalBatch("b-impl")


def test_provides_map_per_package_overrides_global():
    rec = record("/r/a", ["a", "a-extra"], provides=["common"], per_package={"a-extra": ["extra-only"]})
    provides = build_provides_map([rec])
    assert provides == {"common": "a", "extra-only": "a-extra"}


def test_classify_dependency():
    records = [record("/r/c", ["foo-impl"], provides=["libbar"])]
    filenames = build_package_filenames(records, CARCH, PKGEXT)
    provides = build_provides_map(records)
    assert classify_dependency("foo-impl", filenames, provides) == LocalBatch("foo-impl")
    assert classify_dependency("libbar", filenames, provides) == LocalBatch("foo-impl")
    assert classify_dependency("glibc", filenames, provides) is External


def test_virtual_dependency_resolves_to_provider(tmp_path):
    c = record("/r/c", ["foo-impl"], provides=["libbar"])
    d = record("/r/d", ["d"], deps=["libbar", "glibc"])
    resolver = make_resolver([c, d], tmp_path, reader=lambda p: [])
    make_package(tmp_path / "foo-impl-1.0-1-x86_64.pkg.tar.gz", "foo-impl")
    result = resolver.resolve_install_set(d.dependencies, own_packages=d.package_names)
    assert result.our_deps == ["foo-impl"]
    assert result.repo_deps == ["glibc"]


def test_transitive_closure_through_built_artifacts(tmp_path):
    records = [record("/r/x", ["x"]), record("/r/y", ["y"]), record("/r/z", ["z"]),
               record("/r/app", ["app"], deps=["z", "x", "openssl", "openssl"])]
    for name in "xyz":
        make_package(tmp_path / f"{name}-1.0-1-x86_64.pkg.tar.gz", name)
    artifact_deps = {"z": ["y", "glibc"], "y": ["x"], "x": ["z"]}
    reads = []

    def reader(path):
        reads.append(path)
        return artifact_deps[path.rsplit("/", 1)[1].split("-", 1)[0]]

    resolver = make_resolver(records, tmp_path, reader)
    result = resolver.resolve_install_set(records[3].dependencies, own_packages=["app"])
    assert result.our_deps == ["z", "x", "y"]
    assert result.repo_deps == ["openssl"]
    # external dependencies of artifacts are left to pacman
    assert "glibc" not in result.repo_deps
    assert len(reads) == 3

    # a second resolution reuses the cached artifact metadata
    resolver.resolve_install_set(["y"])
    assert len(reads) == 3


def test_own_packages_are_not_installed(tmp_path):
    rec = record("/r/split", ["split-a", "split-b"], deps=["split-b"])
    resolver = make_resolver([rec], tmp_path, reader=lambda p: [])
    assert resolver.resolve_install_set(rec.dependencies, own_packages=rec.package_names).our_deps == []


def test_missing_local_artifact_is_a_build_order_error(tmp_path):
    records = [record("/r/a", ["a"], deps=["libfoo"]), record("/r/b", ["libfoo"])]
    resolver = make_resolver(records, tmp_path, reader=lambda p: [])
    with pytest.raises(BuildOrderError):
        resolver.resolve_install_set(["libfoo"], own_packages=["a"])


def test_missing_artifact_found_during_closure(tmp_path):
    records = [record("/r/x", ["x"]), record("/r/y", ["y"])]
    make_package(tmp_path / "x-1.0-1-x86_64.pkg.tar.gz", "x")
    resolver = make_resolver(records, tmp_path, reader=lambda p: ["y"])
    with pytest.raises(BuildOrderError):
        resolver.resolve_install_set(["x"])


def test_read_pkginfo_depends(tmp_path):
    pkg = make_package(tmp_path / "x.pkg.tar.gz", "x", depends=["glibc>=2.3", "libfoo.so=1-64", "zlib"])
    assert read_pkginfo_depends(str(pkg)) == ["glibc", "libfoo.so", "zlib"]


def test_read_pkginfo_depends_rejects_garbage(tmp_path):
    bad = tmp_path / "bad.pkg.tar.gz"
    bad.write_bytes(b"not an archive")
    with pytest.raises(MetadataError):
        read_pkginfo_depends(str(bad))


def test_cache_reads_each_artifact_once(tmp_path):
    pkg = make_package(tmp_path / "x.pkg.tar.gz", "x", depends=["a"])
    calls = []

    def reader(path):
        calls.append(path)
        return read_pkginfo_depends(path)

    cache = ArtifactDependencyCache(reader)
    assert cache.get(str(pkg)) == ["a"]
    assert cache.get(str(pkg)) == ["a"]
    assert calls == [str(pkg)]
    assert str(pkg) in cache and len(cache) == 1
