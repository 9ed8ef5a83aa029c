"""Flask web application for the accident monitor."""

import logging
from typing import Any, Dict

from flask import Flask, jsonify, request

from ..incident_orchestrator import IncidentOrchestrator
from ..services.error_handler import InvalidConfiguration
from ..services.sample_source import SensorFeedSampleSource

logger = logging.getLogger(__name__)

CONFIG_FIELDS = ('contact_number', 'sender_identity', 'mode', 'sample_interval_ms', 'settle_delay_ms')


class SafeguardWebApp:
    """JSON API over one monitoring session."""

    def __init__(self, orchestrator: IncidentOrchestrator):
        self.app = Flask(__name__)
        self.orchestrator = orchestrator
        self.app.config['MAX_CONTENT_LENGTH'] = 64 * 1024

        self._setup_routes()

        logger.info("SafeGuard web application initialized")

    def _setup_routes(self):
        """Setup Flask routes."""

        @self.app.route('/api/status')
        def api_status():
            """Get incident state and service statistics."""
            try:
                return jsonify({
                    'success': True,
                    'data': self.orchestrator.get_status()
                })
            except Exception as e:
                logger.error(f"Error getting status: {e}")
                return jsonify({
                    'success': False,
                    'error': str(e)
                }), 500

        @self.app.route('/api/config', methods=['GET'])
        def api_get_config():
            try:
                return jsonify({
                    'success': True,
                    'data': self.orchestrator.config_manager.export_config()
                })
            except Exception as e:
                logger.error(f"Error getting config: {e}")
                return jsonify({
                    'success': False,
                    'error': str(e)
                }), 500

        @self.app.route('/api/config', methods=['POST'])
        def api_update_config():
            """Update session configuration; queued while an alert is running."""
            data = request.get_json(silent=True)
            if not data or not isinstance(data, dict):
                return jsonify({
                    'success': False,
                    'error': 'No data provided'
                }), 400

            changes: Dict[str, Any] = {k: v for k, v in data.items() if k in CONFIG_FIELDS}
            unknown = sorted(set(data) - set(CONFIG_FIELDS))
            if unknown:
                return jsonify({
                    'success': False,
                    'error': f"Unknown configuration keys: {unknown}"
                }), 400

            try:
                applied = self.orchestrator.config_manager.update_config(**changes)
            except InvalidConfiguration as e:
                return jsonify({
                    'success': False,
                    'error': str(e)
                }), 400
            except Exception as e:
                logger.error(f"Error updating config: {e}")
                return jsonify({
                    'success': False,
                    'error': str(e)
                }), 500

            return jsonify({
                'success': True,
                'applied': applied,
                'message': ('Configuration updated successfully' if applied
                            else 'Alert in progress; changes will apply when it finishes')
            })

        @self.app.route('/api/analyze', methods=['POST'])
        def api_analyze():
            """Request one analysis of the current sample."""
            try:
                accepted = self.orchestrator.analyze_now()
                return jsonify({
                    'success': accepted,
                    'message': 'Analysis requested' if accepted else 'Analysis is disabled in manual mode'
                }), 200 if accepted else 409
            except Exception as e:
                logger.error(f"Error requesting analysis: {e}")
                return jsonify({
                    'success': False,
                    'error': str(e)
                }), 500

        @self.app.route('/api/emergency', methods=['POST'])
        def api_emergency():
            """Manual emergency activation."""
            try:
                self.orchestrator.trigger_manual_emergency()
                return jsonify({
                    'success': True,
                    'message': 'Emergency triggered'
                })
            except Exception as e:
                logger.error(f"Error triggering emergency: {e}")
                return jsonify({
                    'success': False,
                    'error': str(e)
                }), 500

        @self.app.route('/api/reset', methods=['POST'])
        def api_reset():
            try:
                self.orchestrator.reset()
                return jsonify({
                    'success': True,
                    'message': 'Reset requested'
                })
            except Exception as e:
                logger.error(f"Error resetting: {e}")
                return jsonify({
                    'success': False,
                    'error': str(e)
                }), 500

        @self.app.route('/api/sensor', methods=['POST'])
        def api_sensor():
            """Push a motion reading into the sensor feed."""
            source = self.orchestrator.sample_source
            if not isinstance(source, SensorFeedSampleSource):
                return jsonify({
                    'success': False,
                    'error': 'Monitor is not running on a sensor feed'
                }), 409

            data = request.get_json(silent=True)
            if not data or not isinstance(data, dict):
                return jsonify({
                    'success': False,
                    'error': 'No data provided'
                }), 400

            try:
                sample = source.update(data.get('accel'), data.get('gyro'), data.get('location'))
            except (TypeError, ValueError) as e:
                return jsonify({
                    'success': False,
                    'error': str(e)
                }), 400

            return jsonify({
                'success': True,
                'data': {'captured_at': sample.captured_at.isoformat()}
            })

        @self.app.route('/api/errors')
        def api_errors():
            """Recent recorded errors and per-component health."""
            try:
                limit = request.args.get('limit', 20, type=int)
                handler = self.orchestrator.error_handler
                return jsonify({
                    'success': True,
                    'data': {
                        'errors': [record.to_dict() for record in handler.get_recent_errors(limit)],
                        'summary': handler.get_error_summary(),
                        'components': handler.get_error_stats()['component_status']
                    }
                })
            except Exception as e:
                logger.error(f"Error getting errors: {e}")
                return jsonify({
                    'success': False,
                    'error': str(e)
                }), 500

    def run(self, host='0.0.0.0', port=5000, debug=False):
        """Run the Flask application."""
        logger.info(f"Starting SafeGuard web interface on {host}:{port}")
        self.app.run(host=host, port=port, debug=debug, threaded=True, use_reloader=False)

    def get_app(self):
        """Get the Flask app instance for external WSGI servers."""
        return self.app


def create_app(orchestrator: IncidentOrchestrator) -> Flask:
    """Factory function to create Flask app."""
    return SafeguardWebApp(orchestrator).get_app()
