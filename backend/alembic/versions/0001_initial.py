"""initial schema for games, rounds, guesses, rankings and answer sources."""

from alembic import op
import sqlalchemy as sa


revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "players",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("nickname", sa.String(length=64), nullable=False),
        sa.Column("image", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("nickname"),
    )

    op.create_table(
        "games",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("mode", sa.String(length=16), nullable=False, server_default="ranked"),
        sa.Column("game_type", sa.String(length=96), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="active"),
        sa.Column("owner_id", sa.String(length=36), nullable=True),
        sa.Column("total_rounds", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("locations_per_round", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("current_round", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("active_round_number", sa.Integer(), nullable=True),
        sa.Column("active_location_index", sa.Integer(), nullable=True),
        sa.Column("location_started_at", sa.BigInteger(), nullable=True),
        sa.Column("clocked_by", sa.String(length=36), nullable=True),
        sa.Column("time_limit_seconds", sa.Integer(), nullable=True),
        sa.Column("scoring_version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("mode IN ('group', 'solo', 'ranked', 'duel')", name="ck_games_mode"),
        sa.CheckConstraint("status IN ('active', 'completed')", name="ck_games_status"),
        sa.ForeignKeyConstraint(["owner_id"], ["players.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_games_owner_id", "games", ["owner_id"], unique=False)

    op.create_table(
        "game_participants",
        sa.Column("game_id", sa.String(length=36), nullable=False),
        sa.Column("player_id", sa.String(length=36), nullable=False),
        sa.Column("joined_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["game_id"], ["games.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["player_id"], ["players.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("game_id", "player_id"),
    )
    op.create_index("ix_game_participants_player_id", "game_participants", ["player_id"], unique=False)

    op.create_table(
        "game_rounds",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("game_id", sa.String(length=36), nullable=False),
        sa.Column("round_number", sa.Integer(), nullable=False),
        sa.Column("location_index", sa.Integer(), nullable=False),
        sa.Column("location_id", sa.String(length=64), nullable=False),
        sa.Column("location_source", sa.String(length=32), nullable=False),
        sa.Column("game_type", sa.String(length=96), nullable=False),
        sa.Column("time_limit_seconds", sa.Integer(), nullable=True),
        sa.CheckConstraint(
            "location_source IN ('points-of-interest', 'region-polygons', 'image-pixels', "
            "'panorama-points', 'custom-categories')",
            name="ck_game_rounds_location_source",
        ),
        sa.ForeignKeyConstraint(["game_id"], ["games.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("game_id", "round_number", "location_index", name="uq_game_rounds_slot"),
    )
    op.create_index("ix_game_rounds_game_id", "game_rounds", ["game_id"], unique=False)

    op.create_table(
        "guesses",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("round_id", sa.String(length=36), nullable=False),
        sa.Column("player_id", sa.String(length=36), nullable=False),
        sa.Column("latitude", sa.Float(), nullable=True),
        sa.Column("longitude", sa.Float(), nullable=True),
        sa.Column("pixel_x", sa.Float(), nullable=True),
        sa.Column("pixel_y", sa.Float(), nullable=True),
        sa.Column("distance_km", sa.Float(), nullable=False),
        sa.Column("score", sa.Integer(), nullable=False),
        sa.Column("is_correct", sa.Boolean(), nullable=True),
        sa.Column("is_timeout", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("time_seconds", sa.Float(), nullable=True),
        sa.Column("client_time_seconds", sa.Float(), nullable=True),
        sa.Column("scoring_version", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["round_id"], ["game_rounds.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["player_id"], ["players.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("round_id", "player_id", name="uq_guesses_round_player"),
    )
    op.create_index("ix_guesses_player_id", "guesses", ["player_id"], unique=False)

    op.create_table(
        "game_results",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("game_id", sa.String(length=36), nullable=False),
        sa.Column("player_id", sa.String(length=36), nullable=False),
        sa.Column("game_type", sa.String(length=96), nullable=False),
        sa.Column("total_score", sa.Integer(), nullable=False),
        sa.Column("average_score", sa.Float(), nullable=False),
        sa.Column("total_distance", sa.Float(), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["game_id"], ["games.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["player_id"], ["players.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("game_id", "player_id", name="uq_game_results_game_player"),
    )
    op.create_index("ix_game_results_type_score", "game_results", ["game_type", "total_score"], unique=False)

    op.create_table(
        "rankings",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("player_id", sa.String(length=36), nullable=False),
        sa.Column("game_type", sa.String(length=96), nullable=False),
        sa.Column("period", sa.String(length=16), nullable=False),
        sa.Column("period_key", sa.String(length=16), nullable=False),
        sa.Column("total_score", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_games", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("average_score", sa.Float(), nullable=False, server_default="0"),
        sa.Column("best_score", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("display_name", sa.String(length=64), nullable=True),
        sa.Column("display_image", sa.Text(), nullable=True),
        sa.Column("rank", sa.Integer(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("period IN ('daily', 'weekly', 'monthly', 'alltime')", name="ck_rankings_period"),
        sa.ForeignKeyConstraint(["player_id"], ["players.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("player_id", "game_type", "period", "period_key", name="uq_rankings_entry"),
    )
    op.create_index("ix_rankings_bucket", "rankings", ["game_type", "period", "period_key"], unique=False)

    op.create_table(
        "poi_locations",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("latitude", sa.Float(), nullable=False),
        sa.Column("longitude", sa.Float(), nullable=False),
        sa.Column("country", sa.String(length=64), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_poi_locations_country", "poi_locations", ["country"], unique=False)

    op.create_table(
        "region_polygons",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("country_code", sa.String(length=8), nullable=False),
        sa.Column("geojson", sa.Text(), nullable=False),
        sa.Column("center_lat", sa.Float(), nullable=False),
        sa.Column("center_lng", sa.Float(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("country_code"),
    )

    op.create_table(
        "image_locations",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("image_map_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("x", sa.Float(), nullable=False),
        sa.Column("y", sa.Float(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_image_locations_map", "image_locations", ["image_map_id"], unique=False)

    op.create_table(
        "panorama_locations",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("panorama_type", sa.String(length=64), nullable=False, server_default="world"),
        sa.Column("image_key", sa.String(length=128), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("latitude", sa.Float(), nullable=False),
        sa.Column("longitude", sa.Float(), nullable=False),
        sa.Column("heading", sa.Float(), nullable=True),
        sa.Column("pitch", sa.Float(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "category_locations",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("category", sa.String(length=64), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("latitude", sa.Float(), nullable=False),
        sa.Column("longitude", sa.Float(), nullable=False),
        sa.Column("country_code", sa.String(length=8), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_category_locations_category", "category_locations", ["category"], unique=False)

    op.create_table(
        "game_type_overrides",
        sa.Column("game_type", sa.String(length=96), nullable=False),
        sa.Column("scale_factor", sa.Float(), nullable=True),
        sa.Column("timeout_penalty_km", sa.Float(), nullable=True),
        sa.Column("default_time_limit_seconds", sa.Integer(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("game_type"),
    )


def downgrade() -> None:
    op.drop_table("game_type_overrides")
    op.drop_index("ix_category_locations_category", table_name="category_locations")
    op.drop_table("category_locations")
    op.drop_table("panorama_locations")
    op.drop_index("ix_image_locations_map", table_name="image_locations")
    op.drop_table("image_locations")
    op.drop_table("region_polygons")
    op.drop_index("ix_poi_locations_country", table_name="poi_locations")
    op.drop_table("poi_locations")
    op.drop_index("ix_rankings_bucket", table_name="rankings")
    op.drop_table("rankings")
    op.drop_index("ix_game_results_type_score", table_name="game_results")
    op.drop_table("game_results")
    op.drop_index("ix_guesses_player_id", table_name="guesses")
    op.drop_table("guesses")
    op.drop_index("ix_game_rounds_game_id", table_name="game_rounds")
    op.drop_table("game_rounds")
    op.drop_index("ix_game_participants_player_id", table_name="game_participants")
    op.drop_table("game_participants")
    op.drop_index("ix_games_owner_id", table_name="games")
    op.drop_table("games")
    op.drop_table("players")
