from gamestatpp import ConnStatus, ProbeProtocol, query
import asyncio


async def main():
    results = await asyncio.gather(
        query(ProbeProtocol.MINECRAFT, "tzdtwsj.top"),
        query(ProbeProtocol.BEDROCK, "tzdtwsj.top"),
    )
    for result in results:
        print("######################################################################")
        print(f"{result.protocol} {result.host}:{result.port} -> {result.connection_status}")
        if result.connection_status is not ConnStatus.SUCCESS:
            print(f"Error: {result.error}")
            continue

        status = result.status
        if result.protocol is ProbeProtocol.MINECRAFT:
            print(
                f"Server is online running version {status.version_name} with {status.players_online} out of {status.players_max} players."
            )
            print(f"Message of the day: {status.description}")
            print(f"Message of the day without formatting: {status.stripped_motd}")
        else:
            print(
                f"Server is online running version {status.version} with {status.players} out of {status.max_players} players."
            )
            print(f"Game mode: {status.game_mode}")
            print(f"Message of the day: {status.motd}")
        print(f"Latency: {result.latency}ms")

asyncio.run(main())
