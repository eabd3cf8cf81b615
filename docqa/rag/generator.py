import logging
import re

from ibm_watsonx_ai import Credentials
from ibm_watsonx_ai.foundation_models import ModelInference
from ibm_watsonx_ai.metanames import GenTextParamsMetaNames as GenParams

from docqa.config import Settings
from docqa.errors import GenerationFailure
from docqa.models import GenerationOutcome, GenerationRequest, GenerationStatus
from docqa.rag.retry import with_retries

logger = logging.getLogger(__name__)

NOT_FOUND_ANSWER = (
    "No relevant information for your query was found in our knowledge base."
)
CONFIG_ERROR_ANSWER = (
    "Error: the chat model or API credentials are not configured, "
    "so an answer cannot be generated."
)
TECHNICAL_ERROR_ANSWER = (
    "A technical error occurred while generating the answer. "
    "Please try again later."
)

INSTRUCTION_DELIMITER = "[/INST]"

PROMPT_TEMPLATE = """[INST]
You are an AI assistant that gives precise, concise and useful answers based EXCLUSIVELY on the context provided.
Do not use outside knowledge.
If the information needed to answer the question is not explicitly in the context, reply clearly and directly: "{not_found}"

Context:
{context}

Question: {query}

Using only the context above, answer the question concisely and coherently.
[/INST]"""


class AnswerGenerator:
    """Grounded answer generation with watsonx.ai.

    ``generate`` never raises: missing context, missing configuration and
    invocation failures each map to a distinct canned answer. When the
    requested chat model fails, the configured fallback models are tried in
    order before giving up. Retries and timeouts are handled here, not by
    the caller.
    """

    def __init__(
        self,
        settings: Settings,
        client: ModelInference | None = None,
        retry_delay: float = 1.0,
        clients: dict[str, ModelInference] | None = None,
    ):
        self.settings = settings
        self.retry_delay = retry_delay
        self.delimiter = INSTRUCTION_DELIMITER
        self._clients: dict[str, ModelInference] = {}
        if client is not None:
            self._clients[settings.watsonx_gen_model] = client
        self._clients.update(clients or {})

    def _get_client(self, model_id: str) -> ModelInference:
        if model_id not in self._clients:
            credentials = Credentials(
                api_key=self.settings.ibm_cloud_api_key,
                url=self.settings.watsonx_url,
            )
            self._clients[model_id] = ModelInference(
                model_id=model_id,
                project_id=self.settings.watsonx_project_id,
                credentials=credentials,
            )
        return self._clients[model_id]

    def build_prompt(self, query: str, context: str) -> str:
        return PROMPT_TEMPLATE.format(
            not_found=NOT_FOUND_ANSWER, context=context, query=query
        )

    def clean_output(self, text: str) -> str:
        """Drop the echoed instruction block and surrounding whitespace."""
        cleaned = text
        if self.delimiter in cleaned:
            cleaned = cleaned.rsplit(self.delimiter, 1)[-1]
        # Remove multiple consecutive newlines
        cleaned = re.sub(r"\n{3,}", "\n\n", cleaned)
        return cleaned.strip()

    def _params(self) -> dict:
        temperature = float(self.settings.temperature)
        params = {
            GenParams.MAX_NEW_TOKENS: int(self.settings.max_new_tokens),
            GenParams.DECODING_METHOD: "greedy" if temperature == 0 else "sample",
        }
        if temperature > 0:
            params[GenParams.TEMPERATURE] = temperature
        return params

    @staticmethod
    def _extract_text(response) -> str:
        data = response.get_result() if hasattr(response, "get_result") else response
        if isinstance(data, str):
            return data
        if isinstance(data, dict):
            if data.get("results"):
                return data["results"][0].get("generated_text", "")
            if "generated_text" in data:
                return data["generated_text"]
            return str(data)
        if hasattr(response, "generated_text"):
            return response.generated_text
        return str(data)

    def _invoke(self, model_id: str, prompt: str) -> str:
        response = self._get_client(model_id).generate(prompt=prompt, params=self._params())
        answer = self.clean_output(self._extract_text(response))
        if not answer:
            raise GenerationFailure(f"{model_id} returned an empty answer")
        return answer

    def candidate_models(self, request: GenerationRequest) -> list[str]:
        """Chat models to try, in order: the requested one, then the fallbacks."""
        models: list[str] = []
        for model_id in [request.model_id, *self.settings.watsonx_gen_fallback_models]:
            model_id = model_id.strip()
            if model_id and model_id not in models:
                models.append(model_id)
        return models

    def _missing_config(self, models: list[str]) -> list[str]:
        missing = []
        if not models:
            missing.append("WATSONX_GEN_MODEL")
        if not self.settings.ibm_cloud_api_key.strip():
            missing.append("IBM_CLOUD_API_KEY")
        if not self.settings.watsonx_project_id.strip():
            missing.append("WATSONX_PROJECT_ID")
        return missing

    def answer(self, request: GenerationRequest) -> GenerationOutcome:
        if not request.context_text.strip():
            return GenerationOutcome(
                text=NOT_FOUND_ANSWER, status=GenerationStatus.NO_CONTEXT
            )

        models = self.candidate_models(request)
        missing = self._missing_config(models)
        if missing:
            logger.error(
                f"Cannot generate answers, missing configuration: {', '.join(missing)}"
            )
            return GenerationOutcome(
                text=CONFIG_ERROR_ANSWER, status=GenerationStatus.CONFIG_MISSING
            )

        prompt = self.build_prompt(request.query, request.context_text)
        for model_id in models:
            try:
                text = with_retries(
                    lambda model_id=model_id: self._invoke(model_id, prompt),
                    max_retries=self.settings.generation_max_retries,
                    timeout=self.settings.generation_timeout,
                    delay=self.retry_delay,
                    label=f"generation ({model_id})",
                )
            except Exception as e:
                logger.warning(f"Chat model {model_id} unavailable: {e}")
                continue
            if model_id != models[0]:
                logger.warning(f"Answer generated with fallback chat model {model_id}")
            return GenerationOutcome(
                text=text, status=GenerationStatus.GENERATED, model_id=model_id
            )

        logger.error(f"All chat models failed: {', '.join(models)}")
        return GenerationOutcome(
            text=TECHNICAL_ERROR_ANSWER, status=GenerationStatus.FAILED
        )

    def generate(self, request: GenerationRequest) -> str:
        return self.answer(request).text
