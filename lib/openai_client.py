from openai import AsyncOpenAI
import asyncio
from typing import Any, Dict, List, Optional
import logging
import uuid
from lib.error_handler import AppError

logger = logging.getLogger(__name__)

# USD per 1K tokens
MODEL_COSTS = {
    'gpt-4o': {'input': 0.005, 'output': 0.015},
    'gpt-4o-mini': {'input': 0.00015, 'output': 0.0006},
    'gpt-4': {'input': 0.01, 'output': 0.03},
    'gpt-3.5-turbo': {'input': 0.0005, 'output': 0.0015},
}
DEFAULT_MODEL = 'gpt-4o'
MAX_SMS_RESPONSE_LENGTH = 300

def estimate_cost(prompt_tokens: int, completion_tokens: int, model: str = DEFAULT_MODEL) -> float:
    costs = MODEL_COSTS.get(model, MODEL_COSTS[DEFAULT_MODEL])
    return (prompt_tokens / 1000) * costs['input'] + (completion_tokens / 1000) * costs['output']

class OpenAIClient:
    def __init__(
        self,
        api_key: str,
        model: str = DEFAULT_MODEL,
        monitor=None,
        daily_token_limit: int = 100000,
        timeout: float = 5.0,
        client: Optional[AsyncOpenAI] = None
    ):
        # One attempt per call so a reply never waits longer than the timeout
        self.client = client or AsyncOpenAI(api_key=api_key, timeout=timeout, max_retries=0)
        self.timeout = timeout
        self.model = model
        self.monitor = monitor
        self.daily_token_limit = daily_token_limit

    async def generate_sms_response(
        self,
        message: str,
        faqs: List[Dict[str, str]],
        business_name: str,
        business_type: str = 'local',
        additional_info: Optional[Dict[str, Any]] = None,
        business_id: Optional[str] = None
    ) -> Optional[str]:
        """
        Answer a customer's text using the business FAQs as context.
        Returns None when the model is unavailable or over budget.
        """
        if self._usage_limit_exceeded(business_id):
            return None

        prompt = self._create_sms_prompt(message, faqs, business_name, business_type, additional_info)
        try:
            response = await self._complete(
                model=self.model,
                messages=[
                    {"role": "system", "content": prompt},
                    {"role": "user", "content": message}
                ],
                max_tokens=150,
                temperature=0.7
            )
        except Exception as e:
            logger.error(f"Error generating SMS response: {str(e)}")
            return None

        self._track_usage('generate_sms_response', response, business_id)

        text = _first_choice_text(response)
        if not text:
            logger.error("OpenAI returned an empty response")
            return None
        if len(text) > MAX_SMS_RESPONSE_LENGTH:
            text = text[:MAX_SMS_RESPONSE_LENGTH - 3] + '...'
        return text

    async def classify_message_intent(
        self,
        message: str,
        business_type: str = 'local',
        business_id: Optional[str] = None
    ) -> bool:
        """Ask the model whether a customer message needs the owner's immediate attention"""
        if self._usage_limit_exceeded(business_id):
            return False

        try:
            response = await self._complete(
                model=self.model,
                messages=[
                    {
                        "role": "system",
                        "content": (
                            f"You are an AI assistant that classifies customer messages for a {business_type} business. "
                            "Determine if the message indicates urgency or requires immediate attention. "
                            f"Consider the context of a {business_type} business when making your determination. "
                            "For example, for an auto shop, messages about broken down vehicles or safety issues would be urgent. "
                            "For a restaurant, food poisoning or large catering emergencies would be urgent. "
                            "For a salon, severe allergic reactions would be urgent. "
                            "For a medical office, symptoms requiring immediate care would be urgent."
                        )
                    },
                    {
                        "role": "user",
                        "content": (
                            "Is this message urgent or does it require immediate attention?\n"
                            f"Message: \"{message}\"\n"
                            "Respond with only \"true\" or \"false\"."
                        )
                    }
                ],
                temperature=0.3,
                max_tokens=10
            )
        except Exception as e:
            raise AppError(f"Urgency classification failed: {str(e)}", status_code=502)

        self._track_usage('classify_message_intent', response, business_id)
        return (_first_choice_text(response) or '').lower() == 'true'

    async def generate_missed_call_response(
        self,
        business,
        subscription_tier: str,
        hours_text: str,
        topics: str = ''
    ) -> str:
        """Write a missed-call text for pro and enterprise businesses"""
        if self._usage_limit_exceeded(business.id):
            raise AppError(f"OpenAI usage limit exceeded for business {business.id}", status_code=429)

        system_prompt = (
            f"You are an AI assistant for {business.name}, a {business.business_type} business. "
            "You are responding to a missed call from a potential customer. "
            "Be friendly, professional, and helpful. Provide relevant information about the business."
        )
        if subscription_tier == 'enterprise':
            system_prompt += " Personalize the message as much as possible and suggest specific services or offerings."

        details = [f"- Business hours: {hours_text}"]
        if business.ordering_link:
            details.append(f"- Online ordering link: {business.ordering_link}")
        if business.quote_link:
            details.append(f"- Quote request link: {business.quote_link}")
        if business.booking_link:
            details.append(f"- Booking link: {business.booking_link}")
        if business.website:
            details.append(f"- Website: {business.website}")
        if business.additional_info:
            details.append(f"- Additional info: {business.additional_info}")
        if topics:
            details.append(f"- Customers usually call about {topics}")

        user_prompt = (
            f"Generate a text message response for a missed call to {business.name}, a {business.business_type} business.\n"
            "Include the following information:\n"
            + "\n".join(details)
            + "\n\nKeep the message concise (under 160 characters if possible) and make it sound natural."
        )

        try:
            response = await self._complete(
                model=self.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt}
                ],
                temperature=0.7 if subscription_tier == 'enterprise' else 0.5,
                max_tokens=200
            )
        except Exception as e:
            raise AppError(f"Missed call response generation failed: {str(e)}", status_code=502)

        self._track_usage('generate_missed_call_response', response, business.id)
        text = _first_choice_text(response)
        if not text:
            raise AppError("Missed call response generation returned no text", status_code=502)
        return text

    def _create_sms_prompt(
        self,
        message: str,
        faqs: List[Dict[str, str]],
        business_name: str,
        business_type: str,
        additional_info: Optional[Dict[str, Any]]
    ) -> str:
        formatted_faqs = "\n\n".join(
            f"Q: {faq.get('question', '')}\nA: {faq.get('answer', '')}" for faq in faqs
        )

        business_context = ''
        if additional_info:
            labels = [('hours', 'Hours'), ('location', 'Location'),
                      ('website', 'Website'), ('ordering_link', 'Online Ordering')]
            for key, label in labels:
                if additional_info.get(key):
                    business_context += f"\n{label}: {additional_info[key]}"

        return (
            f"You are a helpful SMS assistant for a local {business_type} business called \"{business_name}\".\n\n"
            f"Your task is to respond to a customer's SMS message. Keep your response short, friendly, "
            f"and under {MAX_SMS_RESPONSE_LENGTH} characters.\n\n"
            f"BUSINESS INFORMATION:{business_context}\n\n"
            f"FREQUENTLY ASKED QUESTIONS:\n{formatted_faqs}\n\n"
            f"CUSTOMER MESSAGE:\n\"{message}\"\n\n"
            "Provide a helpful, concise response based on the FAQs and business information above. "
            "If you don't know the answer, be honest but helpful."
        )

    async def _complete(self, **kwargs):
        """Chat completion that raises asyncio.TimeoutError once self.timeout elapses"""
        return await asyncio.wait_for(self.client.chat.completions.create(**kwargs), self.timeout)

    def _usage_limit_exceeded(self, business_id: Optional[str]) -> bool:
        if self.monitor is None or not business_id:
            return False
        if self.monitor.check_openai_usage_limit(business_id, self.daily_token_limit):
            logger.warning(f"OpenAI usage limit exceeded for business {business_id}")
            return True
        return False

    def _track_usage(self, endpoint: str, response, business_id: Optional[str]) -> None:
        usage = getattr(response, 'usage', None)
        if self.monitor is None or usage is None:
            return
        self.monitor.track_openai_usage(
            endpoint=endpoint,
            business_id=business_id,
            tokens_used=usage.total_tokens,
            cost_estimate=estimate_cost(usage.prompt_tokens, usage.completion_tokens, self.model),
            model=self.model,
            request_id=uuid.uuid4().hex[:8],
            metadata={
                'prompt_tokens': usage.prompt_tokens,
                'completion_tokens': usage.completion_tokens
            }
        )

def _first_choice_text(response) -> Optional[str]:
    if not response.choices or not response.choices[0].message:
        return None
    content = response.choices[0].message.content
    return content.strip() if content else None
