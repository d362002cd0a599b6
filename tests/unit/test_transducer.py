"""Unit tests for transducer greedy and modified beam search."""

import numpy as np
import pytest

from streamasr.decoding import TransducerGreedySearch, TransducerModifiedBeamSearch
from streamasr.decoding.transducer import Hypothesis, TransducerDecoding
from streamasr.engine.fake import FakeTransducerModel, script_features


def windows(symbols, size=8, shift=4):
    """Split a scripted sequence into overlapping streaming windows."""
    frames = script_features(symbols)
    return [frames[i : i + size] for i in range(0, len(symbols) - size + 1, shift)]


class TestGreedySearch:
    """Tests for streaming and offline greedy search."""

    @pytest.fixture
    def model(self):
        return FakeTransducerModel()

    def test_emits_window_body(self, model):
        """Only the body of a window is decoded; tokens carry frame timestamps."""
        search = TransducerGreedySearch(model)
        (window,) = windows([3, 0, 0, 5, 0, 0, 0, 0])
        (state,) = search.decode([search.init_state()], [window])

        assert search.best(state) == ([3, 5], [0, 3])
        assert state.frame_offset == 4
        assert search.num_trailing_blanks(state) == 0

    def test_state_carries_across_windows(self, model):
        """Timestamps keep counting across windows and blanks accumulate."""
        search = TransducerGreedySearch(model)
        state = search.init_state()
        for window in windows([3, 0, 0, 0, 0, 7, 0, 0, 0, 0, 0, 0]):
            (state,) = search.decode([state], [window])

        assert search.best(state) == ([3, 7], [0, 5])
        assert search.num_trailing_blanks(state) == 2
        assert state.frame_offset == 8
        assert state.encoder_states[0][0] == 2

    def test_decode_does_not_mutate_input(self, model):
        """Decoding returns a new state and leaves the old one untouched."""
        search = TransducerGreedySearch(model)
        initial = search.init_state()
        (window,) = windows([3, 0, 0, 5, 0, 0, 0, 0])
        search.decode([initial], [window])
        assert search.best(initial) == ([], [])
        assert initial.frame_offset == 0

    def test_batch_matches_single(self, model):
        """Each row of a batch decodes as if it were alone."""
        search = TransducerGreedySearch(model)
        a = windows([3, 0, 4, 0, 0, 0, 0, 0])[0]
        b = windows([0, 0, 0, 6, 6, 0, 0, 0])[0]

        batched = search.decode([search.init_state(), search.init_state()], [a, b])
        single_a = search.decode([search.init_state()], [a])[0]
        single_b = search.decode([search.init_state()], [b])[0]

        assert search.best(batched[0]) == search.best(single_a)
        assert search.best(batched[1]) == search.best(single_b)

    def test_offline_with_subsampling(self):
        """Offline models decode the whole utterance at once."""
        model = FakeTransducerModel(streaming=False, subsampling_factor=2)
        search = TransducerGreedySearch(model)
        assert not search.streaming

        (state,) = search.decode([search.init_state()], [script_features([3, 3, 0, 0, 5, 5])])
        assert search.best(state) == ([3, 5], [0, 2])

    def test_reset_keeps_encoder_states(self, model):
        """Reset drops tokens but keeps acoustic context."""
        search = TransducerGreedySearch(model)
        (window,) = windows([3, 0, 0, 5, 0, 0, 0, 0])
        (state,) = search.decode([search.init_state()], [window])

        reset = search.reset_state(state)
        assert search.best(reset) == ([], [])
        assert reset.encoder_states is state.encoder_states
        assert reset.frame_offset == state.frame_offset


class TestModifiedBeamSearch:
    """Tests for modified beam search."""

    @pytest.fixture
    def model(self):
        return FakeTransducerModel()

    def test_matches_greedy_on_peaked_scores(self, model):
        """With one clearly best symbol per frame, beam and greedy agree."""
        greedy = TransducerGreedySearch(model)
        beam = TransducerModifiedBeamSearch(model, max_active_paths=4)
        greedy_state, beam_state = greedy.init_state(), beam.init_state()
        for window in windows([3, 0, 0, 5, 0, 2, 0, 0, 0, 0, 0, 0]):
            (greedy_state,) = greedy.decode([greedy_state], [window])
            (beam_state,) = beam.decode([beam_state], [window])

        assert beam.best(beam_state) == greedy.best(greedy_state)

    def test_beam_width_bound(self, model):
        """No more than max_active_paths hypotheses survive a frame."""
        beam = TransducerModifiedBeamSearch(model, max_active_paths=3)
        (window,) = windows([3, 4, 5, 6, 0, 0, 0, 0])
        (state,) = beam.decode([beam.init_state()], [window])
        assert 1 <= len(state.hyps) <= 3

    def test_hypotheses_sorted(self, model):
        """Hypotheses are kept best first."""
        beam = TransducerModifiedBeamSearch(model, max_active_paths=4)
        (window,) = windows([3, 0, 5, 0, 0, 0, 0, 0])
        (state,) = beam.decode([beam.init_state()], [window])
        scores = [h.log_prob for h in state.hyps]
        assert scores == sorted(scores, reverse=True)

    def test_unique_token_sequences(self, model):
        """Hypotheses with identical tokens are merged."""
        beam = TransducerModifiedBeamSearch(model, max_active_paths=4)
        (window,) = windows([3, 0, 0, 0, 0, 0, 0, 0])
        (state,) = beam.decode([beam.init_state()], [window])
        ys = [h.ys for h in state.hyps]
        assert len(ys) == len(set(ys))

    def test_batch_matches_single(self, model):
        """Batched beam search equals per-stream beam search."""
        beam = TransducerModifiedBeamSearch(model, max_active_paths=2)
        a = windows([3, 0, 4, 0, 0, 0, 0, 0])[0]
        b = windows([0, 7, 0, 0, 0, 0, 0, 0])[0]

        batched = beam.decode([beam.init_state(), beam.init_state()], [a, b])
        single = [beam.decode([beam.init_state()], [x])[0] for x in (a, b)]

        for got, want in zip(batched, single):
            assert [h.ys for h in got.hyps] == [h.ys for h in want.hyps]
            np.testing.assert_allclose(
                [h.log_prob for h in got.hyps], [h.log_prob for h in want.hyps], rtol=1e-6
            )

    def test_sort_key_prefers_fewer_tokens_on_tie(self):
        """Equal scores are ordered by token count."""
        short = Hypothesis(ys=(1,), log_prob=-1.0)
        long = Hypothesis(ys=(1, 2), log_prob=-1.0)
        assert sorted([long, short], key=Hypothesis.sort_key) == [short, long]

    def test_decoder_outputs_refreshed(self, model):
        """Every surviving hypothesis has a decoder output for the next frame."""
        beam = TransducerModifiedBeamSearch(model, max_active_paths=4)
        (window,) = windows([3, 4, 0, 0, 0, 0, 0, 0])
        (state,) = beam.decode([beam.init_state()], [window])
        for hyp in state.hyps:
            assert hyp.decoder_out is not None
            np.testing.assert_array_equal(hyp.decoder_out, beam._context(hyp.ys))


class TestSearchInterface:
    """Tests for the shared transducer search base."""

    def test_search_is_abstract(self):
        """A transducer search without a frame loop cannot be built."""
        with pytest.raises(TypeError):
            TransducerDecoding(FakeTransducerModel())
