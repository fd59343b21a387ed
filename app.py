import os
from pathlib import Path

from walkmap import create_app
from walkmap.config import load_config
from walkmap.spotify_client import SpotifyClient
from walkmap.storage import DB
from walkmap.weather_client import WeatherClient


def build_app():
    db_path = os.environ.get('WALKMAP_DB', str(Path.cwd() / 'walkmap.db'))
    db = DB(Path(db_path))
    cfg = load_config(db)
    sp = SpotifyClient(db)
    weather = WeatherClient(api_key=cfg.get('openweather_api_key') or '')
    return create_app(db_path=db_path, spotify_client=sp, weather_client=weather)


if __name__ == '__main__':
    app = build_app()
    app.run(host='0.0.0.0', port=int(os.environ.get('PORT', 9191)), ssl_context='adhoc')
