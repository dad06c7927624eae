from langchain_core.prompts import PromptTemplate
from langchain_core.output_parsers import StrOutputParser
from langchain_google_genai import ChatGoogleGenerativeAI
import json
import logging
import os
import re

from pydantic import ValidationError

import config
from errors import InsightParseError
from models import InsightSnapshot, MedicalExtraction

logger = logging.getLogger(__name__)

LIVE_INSIGHTS_TEMPLATE = (
    "You are a clinical assistant listening to a live doctor-patient consultation. "
    "Lines starting with 'Dr:' are spoken by the doctor and lines starting with 'Pt:' by the patient. "
    "Analyze the conversation so far and return ONLY a JSON object with this structure:\n"
    '{{"severity": "LOW|NORMAL|HIGH|CRITICAL", "detectedSymptoms": ["..."], "redFlags": ["..."], '
    '"suggestedQuestions": ["..."], "preliminaryDiagnosis": "..."}}\n'
    "Suggest at most three follow-up questions the doctor has not asked yet. "
    "Do not include any information not present in the conversation.\n\n"
    "TRANSCRIPT:\n{transcript}"
)

EXTRACTION_TEMPLATE = (
    "Analyze this doctor-patient conversation and extract key information.\n"
    'TRANSCRIPT: "{transcript}"\n\n'
    "Return ONLY a JSON object with this structure:\n"
    '{{"symptoms": "comma-separated list", "diagnosis": "likely diagnosis", "severity": "NORMAL", '
    '"medications": [{{"name": "...", "dosage": "...", "frequency": "...", "duration": "...", "timing": "...", "instructions": "..."}}], '
    '"labTests": ["test1", "test2"], "instructions": "care instructions", "followUpDays": 7}}'
)

LAYMAN_TEMPLATE = (
    "Explain this medical concept to a patient in simple language (max 2 sentences):\n"
    '"{query}"'
)

SPELLING_TEMPLATE = "Correct the spelling of this medication. Return ONLY the corrected name: {name}"

ASSISTANT_TEMPLATE = (
    "You are a concise voice assistant for a doctor during a consultation. "
    "Answer the question in at most three short sentences suitable for reading aloud.\n\n"
    "Question: {query}"
)


def _get_llm(model: str, json_mode: bool = False) -> ChatGoogleGenerativeAI:
    api_key = os.getenv('GEMINI_API_KEY')
    if not api_key:
        logger.error("GEMINI_API_KEY not found in .env file")
        raise ValueError("GEMINI_API_KEY not found in .env file")
    kwargs = {}
    if json_mode:
        kwargs['response_mime_type'] = "application/json"
    return ChatGoogleGenerativeAI(
        model=model,
        temperature=0,
        max_tokens=None,
        timeout=None,
        max_retries=2,
        google_api_key=api_key,
        **kwargs
    )


def _build_chain(template: str, model: str, json_mode: bool = False):
    prompt = PromptTemplate.from_template(template)
    return prompt | _get_llm(model, json_mode) | StrOutputParser()


def strip_code_fences(text: str) -> str:
    text = re.sub(r'```(?:json)?', '', text or '')
    return text.strip()


def parse_insights(raw: str) -> InsightSnapshot:
    cleaned = strip_code_fences(raw)
    if not cleaned:
        raise InsightParseError("Empty AI response")
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise InsightParseError(f"AI response is not valid JSON: {str(e)}") from e
    if not isinstance(data, dict):
        raise InsightParseError("AI response is not a JSON object")
    try:
        return InsightSnapshot.model_validate(data)
    except ValidationError as e:
        raise InsightParseError(f"AI response does not match the insight schema: {str(e)}") from e


def get_live_insights(transcript: str, chain=None) -> InsightSnapshot:
    """
    Ask Gemini for live clinical insights on the consultation so far.
    Args:
        transcript (str): Role-prefixed consultation transcript.
        chain: Optional prebuilt runnable, used instead of the default Gemini chain.
    Returns:
        InsightSnapshot: Severity, symptoms, red flags, suggested questions and diagnosis.
    Raises:
        InsightParseError: When the response is empty, malformed or off-schema.
    """
    chain = chain or _build_chain(LIVE_INSIGHTS_TEMPLATE, config.GEMINI_INSIGHTS_MODEL, json_mode=True)
    logger.debug(f"Requesting live insights for transcript of {len(transcript)} chars")
    raw = chain.invoke({"transcript": transcript})
    logger.debug(f"Raw insights returned by Gemini: {raw}")
    return parse_insights(raw)


def empty_extraction() -> MedicalExtraction:
    return MedicalExtraction(
        symptoms="No symptoms recorded",
        diagnosis="Consultation incomplete",
        instructions="Please complete consultation",
    )


def error_extraction(error_msg: str) -> MedicalExtraction:
    return MedicalExtraction(
        symptoms="Error processing consultation",
        diagnosis=f"Manual review required: {error_msg}",
        instructions="Manual review required",
        follow_up_days=7,
    )


def extract_medical_info(transcript: str, chain=None) -> MedicalExtraction:
    """Structured extraction of a finished consultation; never raises."""
    if not transcript or not transcript.strip():
        return empty_extraction()
    try:
        chain = chain or _build_chain(EXTRACTION_TEMPLATE, config.GEMINI_INSIGHTS_MODEL, json_mode=True)
        raw = chain.invoke({"transcript": transcript})
        cleaned = strip_code_fences(raw)
        if not cleaned:
            raise ValueError("Empty AI response")
        return MedicalExtraction.model_validate(json.loads(cleaned))
    except (json.JSONDecodeError, ValidationError) as e:
        logger.error(f"Failed to parse medical extraction: {str(e)}")
        return error_extraction("JSON Parsing Error")
    except Exception as e:
        logger.error(f"Medical extraction failed: {str(e)}")
        return error_extraction(str(e))


def get_layman_explanation(query: str, chain=None) -> str:
    if not query or not query.strip():
        return "Please ask a specific medical question."
    try:
        chain = chain or _build_chain(LAYMAN_TEMPLATE, config.GEMINI_CHAT_MODEL)
        response = chain.invoke({"query": query}).strip()
        return response or "I couldn't generate an explanation at this time."
    except Exception as e:
        logger.error(f"Layman explanation failed: {str(e)}")
        return "I'm having trouble connecting to the AI assistant right now."


def correct_medication_spelling(name: str, chain=None) -> str:
    try:
        chain = chain or _build_chain(SPELLING_TEMPLATE, config.GEMINI_CHAT_MODEL)
        corrected = chain.invoke({"name": name}).strip()
        return corrected or name
    except Exception as e:
        logger.warning(f"Medication spelling correction failed for {name}: {str(e)}")
        return name


def get_general_response(query: str, chain=None) -> str:
    if not query or not query.strip():
        return "I didn't catch that. Please ask again."
    try:
        chain = chain or _build_chain(ASSISTANT_TEMPLATE, config.GEMINI_CHAT_MODEL)
        return chain.invoke({"query": query}).strip()
    except Exception as e:
        logger.error(f"Assistant response failed: {str(e)}")
        return "I'm having trouble connecting to the AI assistant right now."
