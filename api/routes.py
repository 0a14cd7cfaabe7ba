from flask import Flask, request, Response, jsonify
import logging
import sys
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional

from twilio.twiml.voice_response import VoiceResponse

from lib.config import Settings, get_settings
from lib.database import Database
from lib.error_handler import AppError, ErrorHandler
from lib.monitoring import Monitor, init_sentry
from lib.openai_client import OpenAIClient
from lib.rate_limiter import RateLimiter
from lib.twilio_client import TwilioClient
from .services.billing import BillingService
from .services.business import save_business_info
from .services.responder import Responder
from .services.sms import SMSService

# Configure detailed logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    stream=sys.stdout,
    force=True  # Ensure our config takes precedence
)

logger = logging.getLogger(__name__)

@dataclass
class Services:
    settings: Settings
    sms: SMSService
    billing: BillingService
    database: Any
    twilio: Any
    monitor: Monitor
    inbound_limiter: RateLimiter

def build_services(settings: Optional[Settings] = None) -> Services:
    settings = settings or get_settings()
    sentry_enabled = init_sentry(settings.sentry_dsn, settings.environment)

    logger.info("Initializing Supabase client...")
    try:
        database = Database()
        logger.info("Supabase client initialized successfully")
    except Exception as e:
        logger.error(f"Error initializing Supabase client: {str(e)}")
        raise

    monitor = Monitor(database=database, sentry_enabled=sentry_enabled)

    logger.info("Initializing Twilio client...")
    twilio_client = TwilioClient(
        settings.twilio_account_sid,
        settings.twilio_auth_token,
        settings.twilio_phone_number,
        database=database,
        monitor=monitor,
        cooldown_seconds=settings.sms_cooldown_seconds
    )
    logger.info("Twilio client initialized successfully")

    openai_client = None
    if settings.openai_api_key:
        logger.info("Initializing OpenAI client...")
        openai_client = OpenAIClient(
            api_key=settings.openai_api_key,
            model=settings.openai_model,
            monitor=monitor,
            daily_token_limit=settings.openai_daily_token_limit,
            timeout=settings.openai_timeout_seconds
        )
        logger.info("OpenAI client initialized successfully")
    else:
        logger.warning("OPENAI_API_KEY not set, language model replies disabled")

    logger.info("Initializing services...")
    sms_service = SMSService(
        twilio_client=twilio_client,
        database=database,
        responder=Responder(openai_client, settings.enable_openai_fallback),
        monitor=monitor,
        phone_number=settings.twilio_phone_number,
        default_owner_phone=settings.default_owner_phone,
        fallback_forwarding=settings.fallback_forwarding,
        webhook_base_url=settings.webhook_base_url
    )
    billing_service = BillingService(
        database=database,
        secret_key=settings.stripe_secret_key,
        webhook_secret=settings.stripe_webhook_secret,
        price_ids=settings.stripe_price_ids
    )
    logger.info("All services initialized successfully")

    return Services(
        settings=settings,
        sms=sms_service,
        billing=billing_service,
        database=database,
        twilio=twilio_client,
        monitor=monitor,
        inbound_limiter=RateLimiter(settings.inbound_rate_limit, settings.inbound_rate_window_seconds)
    )

def request_params() -> Dict[str, Any]:
    """Query string parameters overlaid with the form or JSON body"""
    params = request.args.to_dict()
    if request.is_json:
        data = request.get_json(silent=True)
        if isinstance(data, dict):
            params.update(data)
    else:
        params.update(request.form.to_dict())
    return params

def twiml_response(response: VoiceResponse) -> Response:
    return Response(str(response), mimetype='text/xml')

def create_app(services: Optional[Services] = None) -> Flask:
    app = Flask(__name__)
    services = services or build_services()
    settings = services.settings

    def webhook_url() -> str:
        if settings.webhook_base_url:
            query = request.query_string.decode()
            url = f"{settings.webhook_base_url.rstrip('/')}{request.path}"
            return f"{url}?{query}" if query else url
        return request.url

    def signature_valid() -> bool:
        if not settings.signature_validation_enabled:
            return True
        signature = request.headers.get('X-Twilio-Signature')
        return services.twilio.validate_request(webhook_url(), request.form.to_dict(), signature)

    def guard_twilio_webhook(params: Dict[str, Any], required: Iterable[str], missing_message: str):
        """400 for missing fields, 403 for a bad signature, 429 when the sender is over the limit"""
        if any(not params.get(field) for field in required):
            logger.warning(f"{request.path}: {missing_message}")
            return jsonify({'error': missing_message}), 400

        if not signature_valid():
            logger.error(f"{request.path}: invalid Twilio signature")
            return jsonify({'error': 'Invalid Twilio signature'}), 403

        limit = services.inbound_limiter.hit(params['From'])
        if not limit.allowed:
            logger.warning(f"{request.path}: rate limit exceeded for {params['From']}")
            body = jsonify({'error': 'Too many requests', 'retryAfter': limit.retry_after()})
            return body, 429, limit.headers()
        return None

    def error_response(error: Exception):
        status = ErrorHandler.status_for_error(error)
        if status >= 500:
            logger.error(f"{request.path} failed: {str(error)}", exc_info=True)
            services.monitor.capture_exception(error, path=request.path)
        message = error.message if isinstance(error, AppError) else str(error)
        return jsonify({'error': message}), status

    @app.errorhandler(AppError)
    def handle_app_error(error: AppError):
        if error.status_code >= 500:
            logger.error(f"{request.path} failed: {error.message}")
        return jsonify({'error': error.message, **error.details}), error.status_code

    @app.route('/', methods=['GET'])
    def root():
        """Basic health check"""
        return {'status': 'healthy', 'environment': settings.environment}

    @app.route('/api/missed-call', methods=['POST'])
    async def missed_call():
        params = request_params()
        logger.info(f"Missed call webhook received: {params}")
        if 'DialCallStatus' in params:
            params.setdefault('CallStatus', params['DialCallStatus'])

        rejected = guard_twilio_webhook(params, ('To', 'From', 'CallStatus'),
                                        'Missing required fields: To, From, CallStatus')
        if rejected:
            return rejected

        try:
            return jsonify(await services.sms.handle_missed_call(params))
        except Exception as e:
            return error_response(e)

    @app.route('/api/new-message', methods=['POST'])
    async def new_message():
        params = request_params()
        logger.info(f"New message webhook received from {params.get('From')}")

        rejected = guard_twilio_webhook(params, ('To', 'From', 'Body'), 'Missing required fields')
        if rejected:
            return rejected

        try:
            return jsonify(await services.sms.handle_incoming_message(params))
        except Exception as e:
            return error_response(e)

    @app.route('/api/twilio/voice', methods=['POST'])
    async def voice():
        params = request_params()
        logger.info(f"Voice webhook received: {params}")

        if not params.get('To') or not params.get('From'):
            logger.error("Missing To or From in Twilio webhook")
            return jsonify({'error': 'Missing To or From in Twilio webhook'}), 400

        if not signature_valid():
            return jsonify({'error': 'Invalid Twilio signature'}), 403

        try:
            return Response(await services.sms.handle_voice_call(params), mimetype='text/xml')
        except Exception as e:
            # Errors still answer 200 with TwiML
            response = VoiceResponse()
            response.say(ErrorHandler.handle_voice_error(e), voice='alice')
            return twiml_response(response)

    @app.route('/api/twilio/call-status', methods=['POST'])
    async def call_status():
        params = request_params()

        if not signature_valid():
            return jsonify({
                'error': 'Invalid signature',
                'message': 'Could not validate that this request came from Twilio'
            }), 403

        return jsonify(await services.sms.handle_call_status(params))

    @app.route('/api/create-checkout-session', methods=['POST'])
    def create_checkout_session():
        data = request.get_json(silent=True) or {}
        business_id = data.get('businessId') or data.get('userId')
        plan_id = data.get('planId')
        if not business_id or not plan_id or not data.get('successUrl') or not data.get('cancelUrl'):
            return jsonify({
                'error': 'Missing required parameters: businessId, planId, successUrl, cancelUrl'
            }), 400

        session_id = services.billing.create_checkout_session(
            business_id, plan_id, data['successUrl'], data['cancelUrl']
        )
        return jsonify({'sessionId': session_id})

    @app.route('/api/stripe-webhook', methods=['POST'])
    def stripe_webhook():
        event = services.billing.construct_event(
            request.get_data(),
            request.headers.get('Stripe-Signature')
        )
        services.billing.handle_event(event)
        return jsonify({'received': True})

    @app.route('/api/update-business-info', methods=['POST'])
    def update_business_info():
        data = request.get_json(silent=True) or request.form.to_dict()
        try:
            record = save_business_info(services.database, data)
        except AppError as e:
            if e.status_code == 400:
                return jsonify({'error': 'Missing required fields', 'message': e.message, **e.details}), 400
            return error_response(e)
        return jsonify({'success': True, 'id': record.get('id')})

    return app
