import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Optional

from lib.error_handler import AppError, ErrorHandler
from .business import Business, Faq

logger = logging.getLogger(__name__)

DAYS_OF_WEEK = ['Monday', 'Tuesday', 'Wednesday', 'Thursday', 'Friday', 'Saturday', 'Sunday']
NO_HOURS_TEXT = 'Please contact us for our business hours'
DEFAULT_FALLBACK_MESSAGE = "Sorry, we couldn't understand your question. Please call us directly."
ORDERING_KEYWORDS = ('order', 'menu', 'delivery', 'pickup', 'takeout')

BUSINESS_TYPE_TOPICS = {
    'restaurant': ['placing an order', 'making a reservation', 'checking menu options',
                   'inquiring about catering', 'asking about dietary accommodations'],
    'auto_shop': ['scheduling a repair', 'getting a quote', 'checking on vehicle status',
                  'inquiring about parts availability', 'booking a maintenance service'],
    'salon': ['booking an appointment', 'checking service availability', 'inquiring about pricing',
              'asking about specific treatments', 'checking stylist availability'],
    'home_services': ['scheduling a service call', 'getting a quote', 'inquiring about emergency services',
                      'checking service areas', 'asking about specific repairs'],
    'retail': ['checking product availability', 'inquiring about store hours', 'asking about current promotions',
               'checking order status', 'inquiring about returns'],
    'healthcare': ['scheduling an appointment', 'inquiring about services', 'checking insurance coverage',
                   'requesting medical records', 'asking about specific treatments'],
    'fitness': ['inquiring about membership', 'checking class schedules', 'booking a personal training session',
                'asking about facilities', 'inquiring about specific programs'],
    'professional_services': ['scheduling a consultation', 'inquiring about services', 'asking about rates',
                              'checking availability', 'requesting information'],
    'real_estate': ['scheduling a viewing', 'inquiring about listings', 'asking about property management',
                    'checking availability', 'requesting market information'],
    'education': ['inquiring about programs', 'checking enrollment availability', 'asking about tuition',
                  'scheduling a tour', 'requesting information'],
    'hospitality': ['checking room availability', 'making a reservation', 'inquiring about amenities',
                    'asking about special rates', 'checking check-in/check-out times'],
    'entertainment': ['checking event schedules', 'purchasing tickets', 'inquiring about venue details',
                      'asking about private bookings', 'checking age restrictions'],
    'other': ['scheduling an appointment', 'requesting information', 'inquiring about services',
              'checking availability', 'asking about pricing'],
}

def format_hours(hours: Optional[Dict[str, str]]) -> str:
    """Group consecutive days that share the same hours, e.g. 'Monday-Friday: 9-5'"""
    if not hours:
        return NO_HOURS_TEXT

    groups = []
    days: List[str] = []
    current = ''
    for day in DAYS_OF_WEEK:
        day_hours = hours.get(day)
        if not day_hours:
            if days:
                groups.append(_format_day_group(days, current))
            days, current = [], ''
            continue
        if not current or current == day_hours:
            days.append(day)
            current = day_hours
        else:
            groups.append(_format_day_group(days, current))
            days, current = [day], day_hours
    if days:
        groups.append(_format_day_group(days, current))

    return ', '.join(groups) if groups else NO_HOURS_TEXT

def _format_day_group(days: List[str], hours: str) -> str:
    if len(days) == 1:
        return f"{days[0]}: {hours}"
    if len(days) == 2:
        return f"{days[0]} and {days[1]}: {hours}"
    return f"{days[0]}-{days[-1]}: {hours}"

def topics_for_business_type(business_type: Optional[str], count: int = 2) -> List[str]:
    normalized = re.sub(r'\s+', '_', (business_type or 'other').lower())
    return BUSINESS_TYPE_TOPICS.get(normalized, BUSINESS_TYPE_TOPICS['other'])[:count]

def format_topics(topics: List[str]) -> str:
    if not topics:
        return ''
    if len(topics) == 1:
        return topics[0]
    if len(topics) == 2:
        return f"{topics[0]} or {topics[1]}"
    return f"{', '.join(topics[:-1])}, or {topics[-1]}"

def industry_extra(business: Business) -> str:
    business_type = (business.business_type or '').lower()
    if business_type == 'restaurant' and business.ordering_link:
        return f" You can also order online at {business.ordering_link}."
    if business_type == 'auto_shop' and business.quote_link:
        return f" For a service quote, visit {business.quote_link}."
    if business_type == 'healthcare':
        return " For medical emergencies, please call 911."
    if business_type == 'salon' and business.booking_link:
        return f" Book an appointment online at {business.booking_link}."
    return ''

def basic_template(business: Business) -> str:
    return (
        f"Hey thanks for calling {business.name}. We're currently unavailable. "
        f"Our hours are {format_hours(business.hours)}.{industry_extra(business)} "
        "Please call back during our business hours or leave a message and we'll get back to you as soon as possible."
    )

def fallback_template(business: Business) -> str:
    return (
        f"Thanks for calling {business.name}. We're currently unavailable. "
        f"Please call back during our business hours: {format_hours(business.hours)}."
    )

def normalize_text(text: str) -> str:
    text = re.sub(r'[^\w\s]', '', (text or '').lower())
    return re.sub(r'\s+', ' ', text).strip()

def match_faq(message: str, faqs: List[Faq]) -> Optional[Faq]:
    """First FAQ whose normalised question is contained in the normalised message"""
    normalized_message = normalize_text(message)
    for faq in faqs:
        question = normalize_text(faq.question)
        if question and question in normalized_message:
            return faq
    return None

def mentions_ordering(message: str) -> bool:
    lowered = (message or '').lower()
    return any(keyword in lowered for keyword in ORDERING_KEYWORDS)

def ordering_reply(ordering_link: str) -> str:
    return f"Order online here: {ordering_link}"

def append_ordering_link(message: str, ordering_link: Optional[str]) -> str:
    if not ordering_link or ordering_link in message:
        return message
    return f"{message} {ordering_reply(ordering_link)}"

def match_alert_keyword(message: str, keywords: List[str]) -> Optional[str]:
    lowered = (message or '').lower()
    for keyword in keywords:
        if keyword.lower() in lowered:
            return keyword
    return None

@dataclass
class Reply:
    message: str
    source: str
    matched_faq: Optional[str] = None

@dataclass
class Urgency:
    urgent: bool
    source: Optional[str] = None

class Responder:
    """Chooses the text sent back to a caller or texter"""

    def __init__(self, openai_client=None, enable_openai_fallback: bool = True):
        self.openai = openai_client
        self.enable_openai_fallback = enable_openai_fallback

    @property
    def model_enabled(self) -> bool:
        return self.openai is not None and self.enable_openai_fallback

    async def missed_call_reply(self, business: Business) -> str:
        """Custom auto-reply, tier template or model text, with the ordering link appended"""
        if business.auto_reply_message:
            message = business.auto_reply_message
        elif business.subscription_tier in ('pro', 'enterprise') and self.model_enabled:
            try:
                message = await self.openai.generate_missed_call_response(
                    business,
                    business.subscription_tier,
                    format_hours(business.hours),
                    format_topics(topics_for_business_type(business.business_type))
                )
            except AppError as e:
                ErrorHandler.handle_ai_error(e)
                message = fallback_template(business)
        else:
            message = basic_template(business)

        return append_ordering_link(message, business.ordering_link)

    async def detect_urgency(self, message: str, business: Business) -> Urgency:
        if match_alert_keyword(message, business.custom_alert_keywords):
            logger.info(f"Message matched a custom alert keyword for business {business.id}")
            return Urgency(True, 'custom_keywords')

        if not self.model_enabled:
            return Urgency(False)

        try:
            urgent = await self.openai.classify_message_intent(message, business.business_type, business.id)
        except AppError as e:
            logger.error(f"Error during GPT urgency classification: {e.message}")
            return Urgency(False)
        return Urgency(True, 'gpt_classification') if urgent else Urgency(False)

    async def sms_reply(self, message: str, business: Business) -> Reply:
        faq = match_faq(message, business.faqs)
        if faq:
            logger.info(f"Matched FAQ: {faq.question}")
            return Reply(faq.answer, 'faq', matched_faq=faq.question)

        if business.ordering_link and mentions_ordering(message):
            return Reply(ordering_reply(business.ordering_link), 'online_ordering')

        if self.model_enabled:
            hours_text = format_hours(business.hours)
            generated = await self.openai.generate_sms_response(
                message,
                [faq.model_dump() for faq in business.faqs],
                business.name,
                business.business_type,
                business.prompt_context(hours_text),
                business.id
            )
            if generated:
                return Reply(generated, 'openai')

        if business.fallback_message:
            return Reply(business.fallback_message, 'custom_fallback')
        return Reply(DEFAULT_FALLBACK_MESSAGE, 'default_fallback')
