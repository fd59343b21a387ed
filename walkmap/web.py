from flask import Blueprint, jsonify, redirect, request, url_for

from .logging import get_logger, with_context
from .storage import DB


def init_web(app, db: DB, sc):
    """Register the streaming-service login flow (PKCE) on ``app``."""
    bp = Blueprint('auth', __name__, url_prefix='/auth')
    logger = get_logger(__name__)

    def _callback_uri():
        # Spotify only accepts HTTPS redirect URIs
        return url_for('auth.callback', _external=True, _scheme='https')

    def _client_id():
        return db.get_setting('spotify_client_id') or None

    @bp.get('/login')
    def login():
        return redirect(sc.get_auth_url(redirect_uri=_callback_uri(), client_id=_client_id()))

    @bp.get('/callback')
    def callback():
        if request.args.get('error'):
            # user declined on the consent screen
            return redirect('/?auth_error=1')
        code = request.args.get('code')
        if not code:
            return redirect('/')
        try:
            sc.handle_callback(code, request.args.get('state') or '',
                               redirect_uri=_callback_uri(), client_id=_client_id())
        except Exception as e:
            with_context(logger)[0].warning("spotify login failed: %s", e)
            return redirect('/?auth_error=1')
        return redirect('/')

    @bp.post('/logout')
    def logout():
        sc.logout()
        return jsonify({"ok": True}), 200

    @bp.get('/status')
    def status():
        return jsonify({"authenticated": sc.is_authenticated()}), 200

    app.register_blueprint(bp)
