"""
Proctor engine services

Usage:
    from proctor_engine.services.engine import build_engine

    engine = build_engine(settings)
    await engine.start()

    handle = await engine.connect(principal)
    await engine.dispatch(handle, parse_inbound(frame))
    await engine.disconnect(handle)
"""
