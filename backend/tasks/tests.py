import contextlib
import itertools
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from datetime import datetime, timedelta, timezone

from django.test import SimpleTestCase, TestCase
from django.urls import reverse
from django.utils.dateparse import parse_datetime
from rest_framework import status
from rest_framework.test import APITestCase

from .engine import DependencyEngine
from .graph import (
    CycleDetected,
    CyclicDependency,
    InternalConsistencyFault,
    SelfDependency,
    TaskGraph,
    TaskNode,
    TaskNotFound,
    find_critical_path,
    propagate_earliest_start,
    topological_order,
    would_create_cycle,
)
from .models import Task, TaskDependency
from .storage import DjangoTaskStorage, TaskStorage

NOW = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)


def make_graph(durations, edges=()):
    """durations: {id: minutes or None}; edges: [(dependent_id, required_id), ...]"""
    tasks = [TaskNode(id=tid, title=f"T{tid}", estimated_duration=d) for tid, d in durations.items()]
    return TaskGraph.from_snapshot(tasks, edges)


def all_chains(graph):
    """Every dependency chain in the graph, by brute force."""
    chains = []

    def walk(chain):
        chains.append(chain)
        for nxt in graph.neighbors_of(chain[-1]):
            walk(chain + [nxt])

    for tid in graph:
        walk([tid])
    return chains


class MemoryStorage(TaskStorage):
    def __init__(self, tasks=(), edges=(), slow=0.0):
        self.tasks = {t.id: t for t in tasks}
        self.edges = set(edges)
        self.slow = slow
        self.start_writes = 0

    def atomic(self):
        return contextlib.nullcontext()

    def list_tasks(self):
        return [replace(t) for t in self.tasks.values()]

    def list_edges(self):
        if self.slow:
            time.sleep(self.slow)
        return sorted(self.edges)

    def create_edge(self, dependent_id, required_id):
        self.edges.add((dependent_id, required_id))

    def delete_edge(self, dependent_id, required_id):
        self.edges.discard((dependent_id, required_id))

    def update_earliest_start(self, task_id, instant):
        self.start_writes += 1
        self.tasks[task_id].earliest_start_date = instant

    def create_task(self, **fields):
        node = TaskNode(id=max(self.tasks, default=0) + 1, **fields)
        self.tasks[node.id] = node
        return replace(node)

    def update_task(self, task_id, **fields):
        if task_id not in self.tasks:
            raise TaskNotFound(task_id)
        for name, value in fields.items():
            setattr(self.tasks[task_id], name, value)
        return replace(self.tasks[task_id])

    def delete_task(self, task_id):
        del self.tasks[task_id]
        self.edges = {e for e in self.edges if task_id not in e}


class GraphModelTests(SimpleTestCase):
    def test_neighbors_and_dependencies_follow_edge_direction(self):
        g = make_graph({1: 10, 2: 20, 3: 30}, [(2, 1), (3, 1)])
        self.assertEqual(g.neighbors_of(1), [2, 3])
        self.assertEqual(g.dependencies_of(2), [1])
        self.assertEqual(g.dependencies_of(1), [])

    def test_duplicate_edge_is_not_added_twice(self):
        g = make_graph({1: None, 2: None}, [(2, 1)])
        self.assertFalse(g.add_edge(2, 1))
        self.assertEqual(g.edges(), [(2, 1)])

    def test_removing_missing_edge_is_noop(self):
        g = make_graph({1: None, 2: None})
        self.assertFalse(g.remove_edge(2, 1))
        self.assertEqual(g.edges(), [])

    def test_unknown_ids_and_self_edges_are_rejected(self):
        g = make_graph({1: None})
        with self.assertRaises(TaskNotFound):
            g.add_edge(1, 99)
        with self.assertRaises(TaskNotFound):
            g.neighbors_of(42)
        with self.assertRaises(SelfDependency):
            g.add_edge(1, 1)

    def test_remove_task_cascades_edges(self):
        g = make_graph({1: None, 2: None, 3: None}, [(2, 1), (3, 2)])
        removed = g.remove_task(2)
        self.assertCountEqual(removed, [(2, 1), (3, 2)])
        self.assertEqual(g.edges(), [])
        self.assertNotIn(2, g)
        self.assertEqual(g.sources(), [1, 3])


class CycleDetectorTests(SimpleTestCase):
    def test_reverse_edge_would_create_cycle(self):
        g = make_graph({1: None, 2: None}, [(2, 1)])
        self.assertTrue(would_create_cycle(1, 2, g))

    def test_transitive_cycle(self):
        g = make_graph({1: None, 2: None, 3: None}, [(2, 1), (3, 2)])
        self.assertTrue(would_create_cycle(1, 3, g))
        self.assertFalse(would_create_cycle(3, 1, g))

    def test_independent_tasks(self):
        g = make_graph({1: None, 2: None, 3: None}, [(2, 1)])
        self.assertFalse(would_create_cycle(3, 2, g))

    def test_existing_cycle_terminates(self):
        g = make_graph({1: None, 2: None, 3: None})
        g.add_edge(2, 3)
        g.add_edge(3, 2)
        with self.assertLogs('tasks.graph', level='WARNING'):
            self.assertTrue(would_create_cycle(1, 2, g))

    def test_agrees_with_topological_order(self):
        base = make_graph({i: None for i in range(1, 6)}, [(2, 1), (3, 1), (4, 2), (4, 3), (5, 4)])
        for a, b in itertools.permutations(base, 2):
            if base.has_edge(a, b):
                continue
            g = base.copy()
            predicted = would_create_cycle(a, b, g)
            g.add_edge(a, b)
            if predicted:
                with self.assertRaises(CycleDetected):
                    topological_order(g)
            else:
                topological_order(g)


class TopologicalOrderTests(SimpleTestCase):
    def test_prerequisites_come_first(self):
        edges = [(2, 1), (3, 2), (3, 1), (5, 4), (6, 3), (6, 5)]
        g = make_graph({i: None for i in range(1, 7)}, edges)
        order = topological_order(g)
        self.assertCountEqual(order, list(g))
        for dependent_id, required_id in edges:
            self.assertLess(order.index(required_id), order.index(dependent_id))

    def test_order_is_deterministic(self):
        g = make_graph({3: None, 1: None, 2: None, 4: None}, [(4, 2)])
        self.assertEqual(topological_order(g), topological_order(g.copy()))
        self.assertEqual(topological_order(g), [1, 2, 3, 4])

    def test_cycle_is_reported(self):
        g = make_graph({1: None, 2: None})
        g.add_edge(2, 1)
        g.add_edge(1, 2)
        with self.assertRaises(CycleDetected) as ctx:
            topological_order(g)
        self.assertEqual(ctx.exception.cycle, [2, 1, 2])


class EarliestStartTests(SimpleTestCase):
    def test_starts_follow_prerequisite_finish(self):
        g = make_graph({1: 30, 2: 60, 3: None, 4: 15}, [(2, 1), (3, 2), (3, 1)])
        starts = propagate_earliest_start(g, topological_order(g), NOW)
        self.assertEqual(starts[1], NOW)
        self.assertEqual(starts[2], NOW + timedelta(minutes=30))
        self.assertEqual(starts[3], NOW + timedelta(minutes=90))
        self.assertEqual(starts[4], NOW)

    def test_monotonic_along_every_edge(self):
        edges = [(2, 1), (3, 1), (4, 2), (4, 3), (5, 4)]
        g = make_graph({1: 5, 2: 50, 3: 10, 4: None, 5: 7}, edges)
        starts = propagate_earliest_start(g, topological_order(g), NOW)
        for dependent_id, required_id in edges:
            finish = starts[required_id] + timedelta(minutes=g.duration_of(required_id))
            self.assertGreaterEqual(starts[dependent_id], finish)
        self.assertTrue(all(s >= NOW for s in starts.values()))


class CriticalPathTests(SimpleTestCase):
    def test_two_task_chain(self):
        g = make_graph({1: 30, 2: 60}, [(2, 1)])
        path = find_critical_path(g)
        self.assertEqual(path.task_ids, [1, 2])
        self.assertEqual(path.total_duration, 90)

    def test_longer_branch_wins(self):
        g = make_graph({1: 10, 2: 20, 3: 30}, [(2, 1), (3, 1)])
        path = find_critical_path(g)
        self.assertEqual(path.task_ids, [1, 3])
        self.assertEqual(path.total_duration, 40)

    def test_single_task_without_duration(self):
        path = find_critical_path(make_graph({7: None}))
        self.assertEqual(path.task_ids, [7])
        self.assertEqual(path.total_duration, 0)

    def test_empty_graph(self):
        path = find_critical_path(TaskGraph())
        self.assertEqual(path.tasks, [])
        self.assertEqual(path.total_duration, 0)

    def test_zero_duration_chain_is_kept(self):
        g = make_graph({1: None, 2: None, 3: None}, [(2, 1), (3, 2)])
        self.assertEqual(find_critical_path(g).task_ids, [1, 2, 3])

    def test_heaviest_immediate_successor_is_not_enough(self):
        g = make_graph({1: 1, 2: 1, 3: 50, 4: 100}, [(2, 1), (3, 1), (4, 2)])
        path = find_critical_path(g)
        self.assertEqual(path.task_ids, [1, 2, 4])
        self.assertEqual(path.total_duration, 102)

    def test_ties_prefer_lowest_id(self):
        g = make_graph({5: 10, 2: 10, 9: 10})
        self.assertEqual(find_critical_path(g).task_ids, [2])

    def test_path_is_optimal_and_connected(self):
        edges = [(2, 1), (3, 1), (4, 2), (5, 3), (5, 4), (6, 5), (8, 7), (6, 8)]
        g = make_graph({1: 3, 2: 8, 3: 20, 4: 1, 5: 4, 6: 2, 7: 25, 8: 6}, edges)
        path = find_critical_path(g)
        for earlier, later in zip(path.task_ids, path.task_ids[1:]):
            self.assertTrue(g.has_edge(later, earlier))
        longest = max(sum(g.duration_of(t) for t in chain) for chain in all_chains(g))
        self.assertEqual(path.total_duration, longest)


class EngineTests(SimpleTestCase):
    def make_engine(self, durations, edges=(), **kwargs):
        tasks = [TaskNode(id=tid, title=f"T{tid}", estimated_duration=d) for tid, d in durations.items()]
        storage = MemoryStorage(tasks, edges, **kwargs)
        return DependencyEngine(storage, clock=lambda: NOW), storage

    def test_cycle_is_rejected_without_mutation(self):
        engine, storage = self.make_engine({1: 10, 2: 20})
        engine.add_dependency(1, 2)
        writes = storage.start_writes
        with self.assertRaises(CyclicDependency) as ctx:
            engine.add_dependency(2, 1)
        self.assertEqual(ctx.exception.code, 'cycle')
        self.assertEqual(storage.edges, {(1, 2)})
        self.assertEqual(storage.start_writes, writes)

    def test_add_dependency_returns_prerequisite_and_updates_starts(self):
        engine, storage = self.make_engine({1: 30, 2: 60})
        required = engine.add_dependency(2, 1)
        self.assertEqual(required.id, 1)
        self.assertEqual(storage.tasks[1].earliest_start_date, NOW)
        self.assertEqual(storage.tasks[2].earliest_start_date, NOW + timedelta(minutes=30))

    def test_duplicate_add_and_missing_remove_are_noops(self):
        engine, storage = self.make_engine({1: None, 2: None})
        engine.add_dependency(2, 1)
        engine.add_dependency(2, 1)
        self.assertEqual(storage.edges, {(2, 1)})
        self.assertFalse(engine.remove_dependency(1, 2))
        self.assertTrue(engine.remove_dependency(2, 1))
        self.assertEqual(storage.edges, set())

    def test_validation_errors(self):
        engine, storage = self.make_engine({1: None})
        with self.assertRaises(SelfDependency):
            engine.add_dependency(1, 1)
        with self.assertRaises(TaskNotFound) as ctx:
            engine.add_dependency(1, 99)
        self.assertEqual(ctx.exception.code, 'unknown_task')
        with self.assertRaises(TaskNotFound):
            engine.list_dependencies(99)
        self.assertEqual(storage.edges, set())

    def test_list_dependencies(self):
        engine, _ = self.make_engine({1: None, 2: None, 3: None}, [(3, 1), (3, 2)])
        self.assertEqual([t.id for t in engine.list_dependencies(3)], [1, 2])

    def test_concurrent_opposite_edges_cannot_both_commit(self):
        engine, storage = self.make_engine({1: None, 2: None}, slow=0.02)

        def attempt(edge):
            try:
                engine.add_dependency(*edge)
                return 'ok'
            except CyclicDependency:
                return 'cycle'

        with ThreadPoolExecutor(max_workers=2) as pool:
            results = list(pool.map(attempt, [(1, 2), (2, 1)]))
        self.assertCountEqual(results, ['ok', 'cycle'])
        self.assertEqual(len(storage.edges), 1)

    def test_cyclic_storage_is_an_internal_fault(self):
        engine, _ = self.make_engine({1: None, 2: None}, [(1, 2), (2, 1)])
        with self.assertLogs('tasks.engine', level='CRITICAL'):
            with self.assertRaises(InternalConsistencyFault):
                engine.recompute()

    def test_unchanged_starts_are_not_rewritten(self):
        engine, storage = self.make_engine({1: 10, 2: 20}, [(2, 1)])
        engine.recompute()
        self.assertEqual(storage.start_writes, 2)
        engine.recompute()
        self.assertEqual(storage.start_writes, 2)

    def test_recompute_returns_schedule(self):
        engine, _ = self.make_engine({1: 10, 2: 20, 3: 30}, [(2, 1), (3, 1)])
        schedule = engine.recompute()
        self.assertEqual(schedule.order[0], 1)
        self.assertEqual(schedule.earliest_starts[3], NOW + timedelta(minutes=10))
        self.assertEqual(schedule.critical_path.task_ids, [1, 3])


class DjangoStorageEngineTests(TestCase):
    def setUp(self):
        self.engine = DependencyEngine(DjangoTaskStorage(), clock=lambda: NOW)

    def test_deleting_prerequisite_unblocks_dependent(self):
        a = self.engine.add_task("A", estimated_duration=60)
        b = self.engine.add_task("B", estimated_duration=30)
        self.engine.add_dependency(b.id, a.id)
        self.assertEqual(Task.objects.get(pk=b.id).earliest_start_date, NOW + timedelta(minutes=60))

        self.engine.remove_task(a.id)

        self.assertFalse(TaskDependency.objects.exists())
        self.assertEqual(Task.objects.get(pk=b.id).earliest_start_date, NOW)
        self.assertEqual(self.engine.critical_path().task_ids, [b.id])

    def test_duration_change_moves_dependents(self):
        a = self.engine.add_task("A", estimated_duration=10)
        b = self.engine.add_task("B")
        self.engine.add_dependency(b.id, a.id)
        self.engine.update_task(a.id, estimated_duration=45)
        self.assertEqual(Task.objects.get(pk=b.id).earliest_start_date, NOW + timedelta(minutes=45))

    def test_rejected_edge_is_not_stored(self):
        a = self.engine.add_task("A")
        b = self.engine.add_task("B")
        self.engine.add_dependency(a.id, b.id)
        with self.assertRaises(CyclicDependency):
            self.engine.add_dependency(b.id, a.id)
        self.assertEqual(list(TaskDependency.objects.values_list('dependent_id', 'required_id')),
                         [(a.id, b.id)])

    def test_unknown_task_on_remove(self):
        with self.assertRaises(TaskNotFound):
            self.engine.remove_task(12345)

    def test_fault_after_edge_write_rolls_back(self):
        t1, t2, t3, t4 = (Task.objects.create(title=f"T{i}") for i in range(1, 5))
        TaskDependency.objects.create(dependent=t3, required=t4)
        TaskDependency.objects.create(dependent=t4, required=t3)

        with self.assertLogs('tasks.engine', level='INFO') as logs:
            with self.assertRaises(InternalConsistencyFault):
                self.engine.add_dependency(t2.id, t1.id)

        self.assertFalse(TaskDependency.objects.filter(dependent=t2, required=t1).exists())
        self.assertEqual(TaskDependency.objects.count(), 2)
        self.assertTrue(any("CRITICAL" in line for line in logs.output))
        self.assertFalse(any("now requires" in line for line in logs.output))

    def test_starts_written_in_one_batch(self):
        ids = [Task.objects.create(title=f"T{i}").id for i in range(3)]
        storage = DjangoTaskStorage()
        with self.assertNumQueries(1):
            storage.update_earliest_starts({tid: NOW for tid in ids})
        self.assertEqual(set(Task.objects.values_list('earliest_start_date', flat=True)), {NOW})


class DependencyApiTests(APITestCase):
    def create(self, title, duration=None):
        resp = self.client.post(reverse('task-list'), {"title": title, "estimated_duration": duration})
        self.assertEqual(resp.status_code, status.HTTP_201_CREATED)
        return resp.data['id']

    def deps_url(self, task_id):
        return reverse('task-dependencies', args=[task_id])

    def test_create_task_sets_earliest_start(self):
        resp = self.client.post(reverse('task-list'), {"title": "Write report"})
        self.assertEqual(resp.status_code, status.HTTP_201_CREATED)
        self.assertIsNotNone(resp.data['earliest_start_date'])

    def test_blank_title_rejected(self):
        resp = self.client.post(reverse('task-list'), {"title": "   "})
        self.assertEqual(resp.status_code, status.HTTP_400_BAD_REQUEST)

    def test_add_list_and_remove_dependency(self):
        a, b = self.create("A", 30), self.create("B", 60)
        resp = self.client.post(self.deps_url(b), {"required_id": a})
        self.assertEqual(resp.status_code, status.HTTP_201_CREATED)
        self.assertEqual(resp.data['id'], a)

        resp = self.client.get(self.deps_url(b))
        self.assertEqual([t['id'] for t in resp.data], [a])

        resp = self.client.delete(f"{self.deps_url(b)}?required_id={a}")
        self.assertEqual(resp.status_code, status.HTTP_200_OK)
        self.assertEqual(resp.data, {"message": "Dependency removed"})
        self.assertEqual(self.client.get(self.deps_url(b)).data, [])

    def test_rejections_carry_reason_codes(self):
        a, b = self.create("A"), self.create("B")
        self.client.post(self.deps_url(a), {"required_id": b})

        resp = self.client.post(self.deps_url(b), {"required_id": a})
        self.assertEqual(resp.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(resp.data['code'], 'cycle')

        resp = self.client.post(self.deps_url(a), {"required_id": a})
        self.assertEqual(resp.data['code'], 'self_dependency')

        resp = self.client.post(self.deps_url(a), {"required_id": 9999})
        self.assertEqual(resp.status_code, status.HTTP_404_NOT_FOUND)
        self.assertEqual(resp.data['code'], 'unknown_task')

        resp = self.client.post(self.deps_url(a), {})
        self.assertEqual(resp.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(TaskDependency.objects.count(), 1)

    def test_critical_path_endpoint(self):
        a, b, c = self.create("A", 10), self.create("B", 20), self.create("C", 30)
        self.client.post(self.deps_url(b), {"required_id": a})
        self.client.post(self.deps_url(c), {"required_id": a})
        resp = self.client.get(reverse('critical-path'))
        self.assertEqual([t['id'] for t in resp.data['critical_path']], [a, c])
        self.assertEqual(resp.data['total_duration'], 40)

    def test_delete_task_removes_edges(self):
        a, b = self.create("A"), self.create("B")
        self.client.post(self.deps_url(b), {"required_id": a})
        resp = self.client.delete(reverse('task-detail', args=[a]))
        self.assertEqual(resp.status_code, status.HTTP_204_NO_CONTENT)
        self.assertEqual(self.client.get(self.deps_url(b)).data, [])
        resp = self.client.get(reverse('task-detail', args=[a]))
        self.assertEqual(resp.status_code, status.HTTP_404_NOT_FOUND)

    def test_recompute_endpoint(self):
        a, b = self.create("A", 15), self.create("B", 5)
        self.client.post(self.deps_url(b), {"required_id": a})
        resp = self.client.post(reverse('schedule-recompute'))
        self.assertEqual(resp.data['order'], [a, b])
        self.assertEqual(set(resp.data['earliest_starts']), {str(a), str(b)})
        self.assertEqual(resp.data['total_duration'], 20)

    def test_list_is_newest_first(self):
        a, b = self.create("A"), self.create("B")
        resp = self.client.get(reverse('task-list'))
        self.assertEqual([t['id'] for t in resp.data], [b, a])

    def test_patch_duration_moves_dependent(self):
        a, b = self.create("A", 10), self.create("B")
        self.client.post(self.deps_url(b), {"required_id": a})

        resp = self.client.patch(reverse('task-detail', args=[a]), {"estimated_duration": 40})
        self.assertEqual(resp.status_code, status.HTTP_200_OK)
        self.assertEqual(resp.data['estimated_duration'], 40)

        a_start = parse_datetime(self.client.get(reverse('task-detail', args=[a])).data['earliest_start_date'])
        b_start = parse_datetime(self.client.get(reverse('task-detail', args=[b])).data['earliest_start_date'])
        self.assertEqual(b_start - a_start, timedelta(minutes=40))

    def test_patch_unknown_task(self):
        resp = self.client.patch(reverse('task-detail', args=[999]), {"estimated_duration": 5})
        self.assertEqual(resp.status_code, status.HTTP_404_NOT_FOUND)
        self.assertEqual(resp.data['code'], 'unknown_task')
