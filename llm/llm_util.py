from typing import List, Optional

from langchain_google_genai import ChatGoogleGenerativeAI, GoogleGenerativeAIEmbeddings
from langchain_core.prompts import PromptTemplate
from util.secrets import get_gemini_api_key
from util.logging_util import setup_logger, log_llm_interaction
import time

logger = setup_logger(__name__)

DEFAULT_CHAT_MODEL = "gemini-2.0-flash"
DEFAULT_EMBEDDING_MODEL = "models/text-embedding-004"


def get_llm_response(
    template_path: str,
    params: dict,
    model_name: str = DEFAULT_CHAT_MODEL,
    timeout: Optional[float] = None,
) -> str:
    """
    Generates a response from the LLM based on a Jinja2 template file and parameters.

    Args:
        template_path: The absolute path to the Jinja2 template file.
        params: A dictionary of parameters to populate the template.
        model_name: The name of the Gemini model to use.
        timeout: Optional request timeout in seconds.

    Returns:
        The string response from the LLM.
    """
    start_time = time.time()
    
    api_key = get_gemini_api_key()
    
    llm = ChatGoogleGenerativeAI(
        model=model_name,
        google_api_key=api_key,
        timeout=timeout,
        max_retries=0,
    )

    with open(template_path, "r") as f:
        template_content = f.read()

    # Create a prompt template that treats the input as a Jinja2 template
    prompt = PromptTemplate.from_template(template_content, template_format="jinja2")
    chain = prompt | llm

    response = chain.invoke(params)
    
    # Gemini returns content as a list of parts, extract the text
    response_content = response.content
    if isinstance(response_content, list):
        text_parts = [part.get('text', '') for part in response_content if isinstance(part, dict) and 'text' in part]
        response_content = ''.join(text_parts)
    
    duration_ms = (time.time() - start_time) * 1000
    log_llm_interaction(logger, template_path, params, response_content, model_name, duration_ms)
    
    return response_content


def get_embedding(text: str, model_name: str = DEFAULT_EMBEDDING_MODEL) -> List[float]:
    """
    Generates an embedding vector for the given text.

    Args:
        text: The text to embed.
        model_name: The name of the Gemini embedding model to use.

    Returns:
        The embedding as a list of floats.
    """
    start_time = time.time()

    embeddings = GoogleGenerativeAIEmbeddings(
        model=model_name,
        google_api_key=get_gemini_api_key(),
    )
    vector = embeddings.embed_query(text)

    duration_ms = (time.time() - start_time) * 1000
    logger.debug(f"Embedding Request ({duration_ms:.2f}ms) - Model: {model_name}, dims: {len(vector)}")
    return vector
