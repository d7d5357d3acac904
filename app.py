import os
import logging

from flask import Flask, jsonify
from flask_cors import CORS

from embed_routes import embed_bp
from report_routes import reports_bp
from billing_routes import billing_bp
from admin_routes import admin_bp
from support_routes import support_bp

# Configure logging
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

app = Flask(__name__)

CORS(app, resources={r"/*": {"origins": "*"}},
     supports_credentials=False,
     allow_headers=["Content-Type", "Authorization", "apikey", "x-client-info", "x-supabase-api-version",
                    "X-Cron-Secret", "X-Webhook-Secret", "Stripe-Signature"],
     methods=["GET", "POST", "PATCH", "PUT", "DELETE", "OPTIONS"])

app.register_blueprint(embed_bp)
app.register_blueprint(reports_bp)
app.register_blueprint(billing_bp)
app.register_blueprint(admin_bp)
app.register_blueprint(support_bp)


@app.route('/health', methods=['GET'])
def health_check():
    """Health check endpoint."""
    return jsonify({'status': 'healthy'}), 200


if __name__ == '__main__':
    # Validate required environment variables
    required_env_vars = ['SUPABASE_URL', 'SUPABASE_SERVICE_ROLE_KEY']
    missing_vars = [var for var in required_env_vars if not os.environ.get(var)]

    if missing_vars:
        logger.error(f"Missing required environment variables: {', '.join(missing_vars)}")
        exit(1)

    optional_env_vars = ['ENCRYPTION_KEY', 'CRON_SECRET', 'SMTP_HOST', 'STRIPE_SECRET_KEY', 'AI_GATEWAY_API_KEY']
    for var in optional_env_vars:
        if not os.environ.get(var):
            logger.warning(f"{var} not set; features depending on it are disabled")

    app.run(debug=False, host='0.0.0.0', port=int(os.environ.get('PORT', 5000)))
