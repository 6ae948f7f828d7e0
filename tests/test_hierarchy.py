import numpy as np
import pytest

from chunkbrain import (
    ConfigurationError,
    ContractViolation,
    Hierarchy,
    LayerDesc,
    create_hierarchy,
    scale_preset,
)


def _run(hierarchy, stream, cs=None, reward=0.0):
    for inputs in stream:
        hierarchy.step(inputs, compute_system=cs, reward=reward)


class TestCreation:
    def test_single_layer_structure(self, make_hierarchy):
        h = make_hierarchy()
        assert h.num_layers == 1
        assert h.get_num_layers() == 1
        assert h.num_inputs == 1
        assert h.input_temporal_horizon == 2

        view = h.get_layer(0)
        assert view.hidden_size == (2, 2)
        assert view.num_visible_layers == 2
        assert not view.has_feedback
        assert all(v.predict for v in view.visible_layer_descs)

    def test_upper_layers_see_horizon_copies_of_the_layer_below(self, make_hierarchy):
        h = make_hierarchy(ticks_per_update=(1, 3, 2))
        assert h.get_layer(0).has_feedback
        assert h.get_layer(1).has_feedback
        assert not h.get_layer(2).has_feedback
        assert h.get_layer(1).num_visible_layers == 3
        assert h.get_layer(2).num_visible_layers == 2

    def test_unpredicted_input_has_no_decoder(self):
        h = Hierarchy().create(
            [(4, 4), (2, 2)], [2, 1], [True, False],
            [LayerDesc(width=4, height=4, chunk_size=2, ticks_per_update=1)],
        )
        view = h.get_layer(0)
        assert [v.predict for v in view.visible_layer_descs] == [True, True, False, False]
        assert view.backward_weights[2] is None
        assert view.traces[3] is None

    def test_mismatched_argument_lengths(self):
        with pytest.raises(ConfigurationError):
            Hierarchy().create([(4, 4)], [2, 2], [True], [LayerDesc(width=4, height=4, chunk_size=2)])

    def test_horizon_shorter_than_update_period(self):
        desc = LayerDesc(width=4, height=4, chunk_size=2, ticks_per_update=3, temporal_horizon=2)
        with pytest.raises(ConfigurationError):
            Hierarchy().create([(4, 4)], [2], [True], [desc])

    def test_extent_must_be_a_multiple_of_chunk_size(self):
        with pytest.raises(ConfigurationError):
            Hierarchy().create([(5, 4)], [2], [True], [LayerDesc(width=4, height=4, chunk_size=2)])
        with pytest.raises(ConfigurationError):
            LayerDesc(width=6, height=4, chunk_size=4).validate()

    def test_rates_must_lie_in_unit_interval(self):
        with pytest.raises(ConfigurationError):
            LayerDesc(alpha=1.5).validate()
        with pytest.raises(ConfigurationError):
            LayerDesc(gamma=-0.1).validate()

    def test_failed_create_leaves_existing_hierarchy_intact(self, make_hierarchy, random_inputs):
        h = make_hierarchy()
        _run(h, random_inputs(5))
        before = h.get_prediction(0)

        with pytest.raises(ConfigurationError):
            h.create([(4, 4)], [2], [True, False], [LayerDesc(width=4, height=4, chunk_size=2)])

        assert h.num_layers == 1
        np.testing.assert_array_equal(h.get_prediction(0), before)
        assert h.get_update_counts() == [5]


class TestStepContract:
    def test_step_before_create(self):
        with pytest.raises(ContractViolation):
            Hierarchy().step([[0, 0, 0, 0]])

    def test_wrong_number_of_inputs(self, make_hierarchy):
        h = make_hierarchy()
        with pytest.raises(ContractViolation):
            h.step([[0, 0, 0, 0], [0, 0, 0, 0]])

    def test_wrong_chunk_count(self, make_hierarchy):
        h = make_hierarchy()
        with pytest.raises(ContractViolation):
            h.step([[0, 0, 0]])

    @pytest.mark.parametrize("bad", [[0, 0, 0, 4], [-1, 0, 0, 0]])
    def test_index_out_of_range(self, make_hierarchy, bad):
        h = make_hierarchy()
        with pytest.raises(ContractViolation):
            h.step([bad])

    def test_rejected_step_changes_nothing(self, make_hierarchy):
        h = make_hierarchy()
        with pytest.raises(ContractViolation):
            h.step([[0, 1, 2, 9]])
        assert h.get_update_counts() == [0]
        assert h.get_reward_accumulator(0) == (0.0, 0)
        assert all(not code.any() for code in h.get_histories(0))


class TestTiming:
    def test_upper_layer_fires_every_third_call(self, make_hierarchy, random_inputs):
        h = make_hierarchy(ticks_per_update=(1, 3))
        fired = []
        for t, inputs in enumerate(random_inputs(9), start=1):
            before = h.get_update_counts()[1]
            h.step(inputs)
            if h.get_update_counts()[1] > before:
                fired.append(t)

        assert fired == [3, 6, 9]
        assert h.get_update_counts() == [9, 3]
        assert h.get_ticks(1) == 0

    def test_ticks_count_toward_next_update(self, make_hierarchy, random_inputs):
        h = make_hierarchy(ticks_per_update=(1, 3))
        _run(h, random_inputs(4))
        assert h.get_ticks(1) == 1
        assert h.get_ticks_per_update(1) == 3

    def test_idle_bottom_layer_stops_the_pass(self, make_hierarchy, random_inputs):
        h = make_hierarchy(ticks_per_update=(2, 2))
        _run(h, random_inputs(3))
        assert h.get_update_counts() == [1, 0]
        _run(h, random_inputs(1, seed=1))
        assert h.get_update_counts() == [2, 1]

    def test_history_keeps_exactly_horizon_entries(self, make_hierarchy, random_inputs):
        h = make_hierarchy(ticks_per_update=(1, 2), temporal_horizon=(3, 4))
        stream = random_inputs(10)
        _run(h, stream)

        assert len(h.get_histories(0)) == 3
        assert len(h.get_histories(1)) == 4

        history = h.get_histories(0)
        for offset in range(3):
            np.testing.assert_array_equal(history[offset], stream[-1 - offset][0])

    def test_upper_history_holds_lower_hidden_codes(self, make_hierarchy, random_inputs):
        h = make_hierarchy(ticks_per_update=(1, 1))
        _run(h, random_inputs(3))
        np.testing.assert_array_equal(h.get_histories(1)[0], h.get_layer(0).hidden_code)

    def test_histories_are_copies(self, make_hierarchy, random_inputs):
        h = make_hierarchy()
        _run(h, random_inputs(1))
        expected = h.get_histories(0)[0].copy()
        h.get_histories(0)[0][:] = 99
        np.testing.assert_array_equal(h.get_histories(0)[0], expected)


class TestReward:
    def test_upper_layer_learns_from_mean_reward_of_its_period(self, make_hierarchy, random_inputs):
        h = make_hierarchy(ticks_per_update=(1, 2), delta=0.1)
        stream = random_inputs(2)

        h.step(stream[0], reward=1.0)
        assert h.get_layer(0).last_reward == pytest.approx(1.0)
        assert h.get_reward_accumulator(1) == (pytest.approx(1.0), 1)

        h.step(stream[1], reward=3.0)
        assert h.get_layer(0).last_reward == pytest.approx(3.0)
        assert h.get_layer(1).last_reward == pytest.approx(2.0)
        assert h.get_reward_accumulator(1) == (0.0, 0)


class TestBehaviour:
    def test_winners_stay_in_range(self, make_hierarchy, random_inputs):
        h = make_hierarchy(ticks_per_update=(1, 2), delta=0.2, epsilon=0.5)
        for inputs in random_inputs(20):
            h.step(inputs, reward=1.0)
            prediction = h.get_prediction(0)
            assert prediction.shape == (4,)
            assert prediction.min() >= 0 and prediction.max() < 4
            for l in range(h.num_layers):
                code = h.get_layer(l).hidden_code
                assert code.min() >= 0 and code.max() < 4

    def test_same_seed_same_run(self, make_hierarchy, random_inputs):
        a = make_hierarchy(ticks_per_update=(1, 2), delta=0.1, epsilon=0.2)
        b = make_hierarchy(ticks_per_update=(1, 2), delta=0.1, epsilon=0.2)
        for inputs in random_inputs(12):
            a.step(inputs, reward=0.5)
            b.step(inputs, reward=0.5)
            np.testing.assert_array_equal(a.get_prediction(0), b.get_prediction(0))

        for l in range(2):
            for x, y in zip(a.get_layer(l).forward_weights, b.get_layer(l).forward_weights):
                np.testing.assert_array_equal(x, y)

    def test_different_seed_different_weights(self, make_hierarchy):
        a = make_hierarchy(seed=1)
        b = make_hierarchy(seed=2)
        assert not np.array_equal(a.get_layer(0).forward_weights[0], b.get_layer(0).forward_weights[0])

    def test_learns_a_constant_input(self, make_hierarchy):
        h = make_hierarchy()
        pattern = [[0, 1, 2, 3]]

        correct = []
        for _ in range(1000):
            h.step(pattern)
            correct.append(np.array_equal(h.get_prediction(0), pattern[0]))

        assert all(correct[-100:])

    def test_learn_false_freezes_weights(self, make_hierarchy, random_inputs):
        h = make_hierarchy()
        weights = h.get_layer(0).backward_weights[0].copy()
        for inputs in random_inputs(5):
            h.step(inputs, learn=False)
        np.testing.assert_array_equal(h.get_layer(0).backward_weights[0], weights)
        assert h.get_update_counts() == [5]

    def test_thread_pool_matches_serial(self, make_hierarchy, random_inputs, thread_cs):
        a = make_hierarchy(ticks_per_update=(1, 2), delta=0.1, epsilon=0.3)
        b = make_hierarchy(ticks_per_update=(1, 2), delta=0.1, epsilon=0.3)
        stream = random_inputs(10)
        _run(a, stream, reward=1.0)
        _run(b, stream, cs=thread_cs, reward=1.0)

        np.testing.assert_array_equal(a.get_prediction(0), b.get_prediction(0))
        for l in range(2):
            for x, y in zip(a.get_layer(l).backward_weights, b.get_layer(l).backward_weights):
                np.testing.assert_array_equal(x, y)

    def test_prediction_is_a_copy(self, make_hierarchy, random_inputs):
        h = make_hierarchy()
        _run(h, random_inputs(2))
        prediction = h.get_prediction(0)
        prediction[:] = 3
        assert not np.shares_memory(prediction, h.get_layer(0).predictions[0])


class TestQueries:
    def test_rates_are_reported_per_layer(self, make_hierarchy):
        h = make_hierarchy(ticks_per_update=(1, 2), alpha=0.2, beta=0.3, delta=0.4,
                           gamma=0.5, epsilon=0.6, trace_cutoff=0.07)
        for l in range(2):
            assert h.get_alpha(l) == 0.2
            assert h.get_beta(l) == 0.3
            assert h.get_delta(l) == 0.4
            assert h.get_gamma(l) == 0.5
            assert h.get_epsilon(l) == 0.6
            assert h.get_trace_cutoff(l) == 0.07
        assert h.get_layer_desc(1).ticks_per_update == 2

    def test_layer_desc_dict_round_trip(self):
        desc = LayerDesc(width=8, height=4, chunk_size=2, delta=0.3)
        assert LayerDesc.from_dict(desc.to_dict()) == desc
        assert desc.chunks == (4, 2)
        assert desc.cells_per_chunk == 4

    def test_layer_desc_rejects_unknown_fields(self):
        with pytest.raises(ConfigurationError):
            LayerDesc.from_dict({'width': 8, 'depth': 3})


class TestFactories:
    def test_scale_preset_shapes(self):
        descs = scale_preset("micro", delta=0.2)
        assert len(descs) == 2
        assert all(d.width == 8 and d.chunk_size == 2 and d.delta == 0.2 for d in descs)
        assert len(scale_preset("medium")) == 4

    def test_unknown_scale(self):
        with pytest.raises(ConfigurationError):
            scale_preset("huge")

    def test_create_hierarchy_from_preset(self, random_inputs):
        h = create_hierarchy([(8, 8)], [2], scale="micro", seed=3)
        assert h.num_layers == 2
        for inputs in random_inputs(4, num_chunks=16):
            h.step(inputs)
        assert h.get_update_counts() == [2, 1]
        assert h.get_prediction(0).shape == (16,)
