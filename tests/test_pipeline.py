"""
Tests for docqa/rag/pipeline.py
End-to-end sequencing: embed, search, filter, assemble, generate.
"""

from unittest.mock import Mock

import pytest

from conftest import CHAT_MODEL, FakeIndex, make_match
from docqa.errors import IndexNotFound, IndexUnavailable, SearchRejected
from docqa.models import GenerationOutcome, GenerationStatus, Metric, SourceCollection
from docqa.rag.generator import (
    CONFIG_ERROR_ANSWER,
    AnswerGenerator,
    INSTRUCTION_DELIMITER,
    NOT_FOUND_ANSWER,
    TECHNICAL_ERROR_ANSWER,
)
from docqa.rag.pipeline import format_report

QUERY = "What are the advantages of X?"
SENTENCE = "X reduces latency and improves throughput."


class TestEndToEnd:
    def test_relevant_chunk_is_answered(self, make_pipeline, json_index, model_client):
        json_index.matches = [make_match("articles:1", 0.92, SENTENCE, title="Intro")]
        pipeline = make_pipeline(threshold=0.5)

        result = pipeline.run(QUERY)

        assert result.raw_match_count == 1
        assert result.filtered_match_count == 1
        assert result.generation_failed is False
        assert result.generation_status is GenerationStatus.GENERATED
        assert result.answer
        assert result.answer != NOT_FOUND_ANSWER
        assert INSTRUCTION_DELIMITER not in result.answer
        assert "latency" in result.answer

        prompt = model_client.generate.call_args.kwargs["prompt"]
        assert SENTENCE in prompt
        assert QUERY in prompt

    def test_empty_index_gives_not_found(self, make_pipeline, model_client):
        pipeline = make_pipeline()

        result = pipeline.run(QUERY)

        assert result.raw_match_count == 0
        assert result.filtered_match_count == 0
        assert result.answer == NOT_FOUND_ANSWER
        assert result.generation_status is GenerationStatus.NO_CONTEXT
        model_client.generate.assert_not_called()

    def test_all_matches_below_threshold_skip_model(self, make_pipeline, json_index, model_client):
        json_index.matches = [make_match("a", 0.2), make_match("b", 0.49)]
        pipeline = make_pipeline(threshold=0.5)

        result = pipeline.run(QUERY)

        assert result.raw_match_count == 2
        assert result.filtered_match_count == 0
        assert result.answer == NOT_FOUND_ANSWER
        assert model_client.generate.call_count == 0

    def test_distance_metric_keeps_low_scores(self, make_pipeline, json_index):
        json_index.matches = [make_match("near", 0.1), make_match("far", 0.9)]
        pipeline = make_pipeline(threshold=0.5, metric=Metric.L2)

        result = pipeline.run(QUERY)

        assert result.chunk_ids == ["near"]

    def test_k_defaults_and_is_passed_to_index(self, make_pipeline, json_index, settings):
        json_index.matches = [make_match(str(i), 0.9) for i in range(10)]
        pipeline = make_pipeline()

        assert pipeline.run(QUERY).raw_match_count == settings.top_k
        assert pipeline.run(QUERY, k=5).raw_match_count == 5
        assert json_index.searches[-1][1] == 5


class TestEmbeddingFallback:
    def test_primary_failure_retries_once_with_fallback(self, make_pipeline, json_index, primary, local):
        json_index.matches = [make_match("a", 0.8, SENTENCE)]
        primary.fail = True
        pipeline = make_pipeline()

        result = pipeline.run(QUERY)

        assert len(primary.calls) == 1
        assert len(local.calls) == 1
        assert len(json_index.searches) == 1
        assert result.embedding_model_used == local.model_id
        assert result.embedding_degraded is True
        assert result.filtered_match_count == 1

    def test_fallback_is_lazy(self, make_pipeline, json_index, local):
        json_index.matches = [make_match("a", 0.8)]
        pipeline = make_pipeline()

        result = pipeline.run(QUERY)

        pipeline.fallback_factory.assert_not_called()
        assert local.calls == []
        assert result.embedding_model_used == pipeline.embeddings.primary.model_id
        assert result.embedding_degraded is False

    def test_fallback_instantiated_once_per_session(self, make_pipeline, primary):
        primary.fail = True
        pipeline = make_pipeline()

        pipeline.run(QUERY)
        pipeline.run(QUERY)

        assert pipeline.fallback_factory.call_count == 1

    def test_rejected_search_triggers_fallback(self, make_pipeline, json_index, local):
        calls = {"n": 0}
        original = json_index.search

        def search(vector, k=3):
            calls["n"] += 1
            if calls["n"] == 1:
                raise SearchRejected("dimension mismatch")
            return original(vector, k)

        json_index.search = search
        json_index.matches = [make_match("a", 0.8)]
        pipeline = make_pipeline()

        result = pipeline.run(QUERY)

        assert calls["n"] == 2
        assert result.embedding_model_used == local.model_id
        assert result.filtered_match_count == 1

    def test_both_providers_failing_degrades_to_not_found(self, make_pipeline, primary, local, model_client):
        primary.fail = True
        local.fail = True
        pipeline = make_pipeline()

        result = pipeline.run(QUERY)

        assert result.answer == NOT_FOUND_ANSWER
        assert result.raw_match_count == 0
        assert result.embedding_model_used == local.model_id
        assert "down" in result.retrieval_error
        model_client.generate.assert_not_called()


class TestGenerationPaths:
    def test_generation_failure_is_reported(self, make_pipeline, json_index, model_client):
        json_index.matches = [make_match("a", 0.9, SENTENCE)]
        model_client.generate.side_effect = RuntimeError("503 model loading")
        pipeline = make_pipeline()

        result = pipeline.run(QUERY)

        assert result.answer == TECHNICAL_ERROR_ANSWER
        assert result.generation_failed is True
        assert result.filtered_match_count == 1

    def test_missing_chat_model(self, make_pipeline, json_index, model_client):
        json_index.matches = [make_match("a", 0.9, SENTENCE)]
        pipeline = make_pipeline(chat_model="")

        result = pipeline.run(QUERY)

        assert result.answer == CONFIG_ERROR_ANSWER
        assert result.generation_status is GenerationStatus.CONFIG_MISSING
        model_client.generate.assert_not_called()

    def test_generator_is_called_once_per_query(self, make_pipeline, json_index):
        json_index.matches = [make_match("a", 0.9, SENTENCE)]
        generator = Mock()
        generator.answer.return_value = GenerationOutcome(
            text="ok", status=GenerationStatus.GENERATED, model_id=CHAT_MODEL
        )
        pipeline = make_pipeline(generator=generator)

        pipeline.run(QUERY)

        assert generator.answer.call_count == 1
        request = generator.answer.call_args.args[0]
        assert SENTENCE in request.context_text

    def test_fallback_chat_model_is_reported(self, make_pipeline, json_index, model_client, settings):
        json_index.matches = [make_match("a", 0.9, SENTENCE)]
        model_client.generate.side_effect = RuntimeError("503")
        settings.watsonx_gen_fallback_models = ["ibm/granite-13b-chat-v2"]
        backup = Mock()
        backup.generate.return_value = {"results": [{"generated_text": "Backup answer."}]}
        generator = AnswerGenerator(
            settings,
            client=model_client,
            retry_delay=0,
            clients={"ibm/granite-13b-chat-v2": backup},
        )
        pipeline = make_pipeline(generator=generator)

        result = pipeline.run(QUERY)

        assert result.answer == "Backup answer."
        assert result.chat_model == "ibm/granite-13b-chat-v2"
        assert result.generation_failed is False


class TestIdempotence:
    def test_same_query_same_context(self, make_pipeline, json_index):
        json_index.matches = [
            make_match("a", 0.91),
            make_match("b", 0.40),
            make_match("c", 0.77),
        ]
        pipeline = make_pipeline(threshold=0.5)

        first = pipeline.run(QUERY)
        second = pipeline.run(QUERY)

        assert first.filtered_match_count == second.filtered_match_count == 2
        assert set(first.chunk_ids) == set(second.chunk_ids) == {"a", "c"}


class TestConnectionDiscipline:
    def test_run_opens_and_closes(self, make_pipeline, store):
        pipeline = make_pipeline()

        pipeline.run(QUERY)

        assert store.connects == 1
        assert store.closes == 1
        assert store.is_open is False

    def test_second_run_reopens(self, make_pipeline, store):
        pipeline = make_pipeline()

        pipeline.run(QUERY)
        pipeline.run(QUERY)

        assert store.connects == 2
        assert store.closes == 2

    def test_closed_after_generation_failure(self, make_pipeline, store, json_index, model_client):
        json_index.matches = [make_match("a", 0.9, SENTENCE)]
        model_client.generate.side_effect = TimeoutError("slow")
        pipeline = make_pipeline()

        pipeline.run(QUERY)

        assert store.is_open is False

    def test_closed_when_index_missing(self, make_pipeline, store, json_index):
        json_index.error = IndexNotFound(json_index.name)
        pipeline = make_pipeline()

        with pytest.raises(IndexNotFound):
            pipeline.run(QUERY)

        assert store.is_open is False
        assert store.closes == 1

    def test_closed_on_unexpected_error(self, make_pipeline, store, json_index):
        json_index.error = KeyError("boom")
        pipeline = make_pipeline()

        with pytest.raises(KeyError):
            pipeline.run(QUERY)

        assert store.is_open is False

    def test_session_reuses_connection(self, make_pipeline, store):
        pipeline = make_pipeline()

        with pipeline.session():
            pipeline.run(QUERY)
            pipeline.run(QUERY)
            assert store.is_open is True

        assert store.connects == 1
        assert store.closes == 1
        assert store.is_open is False

    def test_session_does_not_close_foreign_connection(self, make_pipeline, store):
        store.connect()
        pipeline = make_pipeline()

        with pipeline.session():
            pipeline.run(QUERY)

        assert store.is_open is True
        assert store.connects == 1

    def test_index_unavailable_propagates(self, make_pipeline, json_index):
        json_index.error = IndexUnavailable("connection refused")
        pipeline = make_pipeline()

        with pytest.raises(IndexUnavailable):
            pipeline.run(QUERY)


class TestSearchTypeSelection:
    def test_pdf_index_is_selected(self, make_pipeline, store, settings):
        pdf_index = FakeIndex(settings.pdf_index_name, [make_match("p1", 0.9, SENTENCE)])
        store.fake_indexes[settings.pdf_index_name] = pdf_index
        pipeline = make_pipeline()

        result = pipeline.run(QUERY, search_type="pdf")

        assert result.search_type is SourceCollection.PDF
        assert result.chunk_ids == ["p1"]
        assert len(pdf_index.searches) == 1

    def test_unknown_search_type(self, make_pipeline):
        pipeline = make_pipeline()
        with pytest.raises(ValueError):
            pipeline.run(QUERY, search_type="xml")


class TestReport:
    def test_report_contains_diagnostics(self, make_pipeline, json_index, primary):
        json_index.matches = [make_match("a", 0.92, SENTENCE, title="Intro")]
        pipeline = make_pipeline()

        report = format_report(pipeline.run(QUERY))

        assert QUERY in report
        assert "Raw results: 1" in report
        assert primary.model_id in report
        assert "**Title:** Intro" in report
        assert "Score: 0.920" in report

    def test_report_marks_fallback(self, make_pipeline, primary):
        primary.fail = True
        pipeline = make_pipeline()

        report = format_report(pipeline.run(QUERY))

        assert "(local fallback)" in report
