import os

from songless import create_app, socketio

app = create_app()

if __name__ == '__main__':
    # Socket.IO server so /ws push works alongside the REST routes
    socketio.run(
        app,
        host=os.environ.get('HOST', '127.0.0.1'),
        port=int(os.environ.get('PORT', '5000')),
        debug=True,
    )
