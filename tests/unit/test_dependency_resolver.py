import pytest

from stackup.RUNNERS.dependency_resolver import DependencyResolver
from stackup.MODELS.service_spec import ServiceSpec


def svc(name, *deps, profiles=()):
    return ServiceSpec(name=name, image='busybox', port=1000 + len(name),
                       depends_on=tuple(deps), profiles=frozenset(profiles))


def names(wave):
    return [s.name for s in wave]


def test_resolve_order():
    services = [svc('web', 'api'), svc('api', 'db'), svc('db')]
    assert DependencyResolver().resolve_order(services) == ['db', 'api', 'web']


def test_waves_group_independent_services():
    services = [svc('a'), svc('b'), svc('c', 'a'), svc('d', 'c'), svc('e', 'a', 'b')]
    waves = DependencyResolver().waves(services)
    assert [names(w) for w in waves] == [['a', 'b'], ['c', 'e'], ['d']]


def test_waves_ignore_unselected_dependencies():
    waves = DependencyResolver().waves([svc('web', 'cache')])
    assert [names(w) for w in waves] == [['web']]


def test_cycle_detected():
    services = [svc('a', 'b'), svc('b', 'c'), svc('c', 'a')]
    with pytest.raises(ValueError) as exc:
        DependencyResolver().resolve_order(services)
    assert 'a -> b -> c -> a' in str(exc.value)


def test_validate_rejects_self_dependency():
    with pytest.raises(ValueError):
        DependencyResolver().validate([svc('a', 'a')])


def test_validate_rejects_unknown_dependency():
    with pytest.raises(ValueError) as exc:
        DependencyResolver().validate([svc('a', 'ghost')])
    assert 'ghost' in str(exc.value)


def test_validate_profile_coselection():
    resolver = DependencyResolver()
    proxy = svc('proxy', profiles=['prod'])
    resolver.validate([proxy, svc('tls', 'proxy', profiles=['prod'])])
    with pytest.raises(ValueError):
        resolver.validate([proxy, svc('app', 'proxy')])
    with pytest.raises(ValueError):
        resolver.validate([proxy, svc('tls', 'proxy', profiles=['prod', 'debug'])])
