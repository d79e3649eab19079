#!/usr/bin/env python3
"""
VendorTal Billing API
Subscription, entitlement and usage service backed by Stripe and PostgreSQL
"""

import os

from flask import Flask, jsonify
from flask_cors import CORS

from billing.service import build_services
from billing.stripe_handler import init_billing

VERSION = '1.0.0'


def create_app(services=None):
    """Build the Flask app around a BillingServices container."""
    app = Flask(__name__)
    CORS(app)

    services = services or build_services()
    app.config['BILLING_SERVICES'] = services

    # ==================== API ENDPOINTS ====================

    @app.route('/api/health', methods=['GET'])
    @app.route('/v2/health', methods=['GET'])
    def health_check():
        """Health check endpoint."""
        return jsonify({
            'status': 'ok',
            'service': 'vendortal-billing',
            'version': VERSION,
            'database': 'postgres' if type(services.store).__name__ == 'PostgresBillingStore' else 'memory',
        })

    # =============================================================================
    # BILLING & STRIPE WEBHOOKS
    # =============================================================================

    app.register_blueprint(init_billing(services))

    @app.errorhandler(404)
    def not_found(e):
        return jsonify({'error': 'Not found'}), 404

    return app


app = create_app()


if __name__ == '__main__':
    port = int(os.environ.get('PORT', 8080))
    app.run(host='0.0.0.0', port=port, debug=False)
